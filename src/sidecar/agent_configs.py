"""
Collector configurations for the auxiliary agents.

Both agents export to the sidecar's OTLP/gRPC port on the loopback
interface, including the collector's own internal telemetry.
"""
from typing import Dict, Iterable, List

import yaml

# Metrics enabled per hostmetrics scraper. Scrapers whose defaults are fine
# still need an entry so they are switched on.
HOST_METRICS_SCRAPERS: Dict[str, List[str]] = {
    'cpu': [
        'system.cpu.time',
        'system.cpu.frequency',
        'system.cpu.logical.count',
        'system.cpu.physical.count',
        'system.cpu.utilization',
    ],
    'disk': [
        'system.disk.io',
        'system.disk.io_time',
        'system.disk.merged',
        'system.disk.operation_time',
        'system.disk.operations',
        'system.disk.pending_operations',
        'system.disk.weighted_io_time',
    ],
    'load': [
        'system.cpu.load_average.15m',
        'system.cpu.load_average.1m',
        'system.cpu.load_average.5m',
    ],
    'filesystem': [
        'system.filesystem.inodes.usage',
        'system.filesystem.usage',
        'system.filesystem.utilization',
    ],
    'memory': [
        'system.memory.usage',
        'system.linux.memory.available',
        'system.linux.memory.dirty',
        'system.memory.limit',
        'system.memory.page_size',
        'system.memory.utilization',
    ],
    'network': [
        'system.network.connections',
        'system.network.dropped',
        'system.network.errors',
        'system.network.io',
        'system.network.packets',
        'system.network.conntrack.count',
        'system.network.conntrack.max',
    ],
    'paging': [
        'system.paging.faults',
        'system.paging.operations',
        'system.paging.usage',
        'system.paging.utilization',
    ],
    'processes': [
        'system.processes.count',
        'system.processes.created',
    ],
    'process': [
        'process.cpu.time',
        'process.disk.io',
        'process.memory.usage',
        'process.memory.virtual',
        'process.context_switches',
        'process.cpu.utilization',
        'process.disk.operations',
        'process.memory.utilization',
        'process.open_file_descriptors',
        'process.paging.faults',
        'process.signals_pending',
        'process.threads',
        'process.uptime',
    ],
}

# Windows only
HOST_METRICS_DISABLED = {'process': ['process.handles']}


def _otlp_exporter(grpc_port: int) -> dict:
    return {
        'endpoint': f"127.0.0.1:{grpc_port}",
        'tls': {'insecure': True},
    }


def _internal_telemetry(grpc_port: int) -> dict:
    otlp = {
        'otlp': {
            'protocol': 'grpc',
            'endpoint': f"http://127.0.0.1:{grpc_port}",
        }
    }
    return {
        'traces': {'processors': [{'batch': {'exporter': otlp}}]},
        'logs': {'processors': [{'batch': {'exporter': otlp}}]},
        'metrics': {
            'level': 'detailed',
            'readers': [{'periodic': {'exporter': otlp}}],
        },
    }


def _metric_toggles(enabled: Iterable[str], disabled: Iterable[str] = ()) -> dict:
    toggles = {name: {'enabled': True} for name in enabled}
    toggles.update({name: {'enabled': False} for name in disabled})
    return toggles


def profiler_config(grpc_port: int = 4317) -> dict:
    """eBPF profiler collector: profiling receiver -> sidecar."""
    return {
        'receivers': {'profiling': None},
        'exporters': {'otlp_grpc': _otlp_exporter(grpc_port)},
        'service': {
            'pipelines': {
                'profiles': {
                    'receivers': ['profiling'],
                    'exporters': ['otlp_grpc'],
                },
            },
            'telemetry': _internal_telemetry(grpc_port),
        },
    }


def host_metrics_config(grpc_port: int = 4317, collection_interval: str = '1m') -> dict:
    """Host collector: hostmetrics receiver -> sidecar."""
    scrapers = {}
    for scraper, metrics in HOST_METRICS_SCRAPERS.items():
        scrapers[scraper] = {
            'metrics': _metric_toggles(metrics, HOST_METRICS_DISABLED.get(scraper, ()))
        }
    # Other users' processes are unreadable without root
    scrapers['process']['mute_process_all_errors'] = True

    return {
        'receivers': {
            'hostmetrics': {
                'collection_interval': collection_interval,
                'initial_delay': '1s',
                'scrapers': scrapers,
            },
        },
        'exporters': {'otlp_grpc': _otlp_exporter(grpc_port)},
        'service': {
            'pipelines': {
                'logs': {'receivers': ['hostmetrics'], 'exporters': ['otlp_grpc']},
                'metrics': {'receivers': ['hostmetrics'], 'exporters': ['otlp_grpc']},
            },
            'telemetry': _internal_telemetry(grpc_port),
        },
    }


def render(config: dict) -> str:
    """Serialize a collector config to YAML."""
    return yaml.safe_dump(config, default_flow_style=False, sort_keys=False)
