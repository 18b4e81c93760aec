"""
OpenTelemetry environment for instrumented job steps.

Resource attributes follow the CI/CD and VCS semantic conventions, plus a
set of github.* attributes taken from the runner's default environment.
"""
from typing import Dict, Mapping, Optional

from sidecar.models import SidecarConfig

# github.* attribute -> runner environment variable
_GITHUB_ATTRIBUTES = (
    ('github.repository.id', 'GITHUB_REPOSITORY_ID'),
    ('github.repository.name', 'GITHUB_REPOSITORY'),
    ('github.repository.owner.name', 'GITHUB_REPOSITORY_OWNER'),
    ('github.repository.owner.id', 'GITHUB_REPOSITORY_OWNER_ID'),
    ('github.event.name', 'GITHUB_EVENT_NAME'),
    ('github.actor.name', 'GITHUB_ACTOR'),
    ('github.actor.id', 'GITHUB_ACTOR_ID'),
    ('github.triggering_actor.name', 'GITHUB_TRIGGERING_ACTOR'),
    ('github.head.ref', 'GITHUB_HEAD_REF'),
    ('github.base.ref', 'GITHUB_BASE_REF'),
    ('github.ref.name', 'GITHUB_REF_NAME'),
    ('github.ref.protected', 'GITHUB_REF_PROTECTED'),
    ('github.workflow.ref', 'GITHUB_WORKFLOW_REF'),
    ('github.workflow.sha', 'GITHUB_WORKFLOW_SHA'),
    ('github.job.name', 'GITHUB_JOB'),
    ('github.run.number', 'GITHUB_RUN_NUMBER'),
    ('github.run.attempt', 'GITHUB_RUN_ATTEMPT'),
    ('github.runner.os', 'RUNNER_OS'),
    ('github.runner.arch', 'RUNNER_ARCH'),
    ('github.runner.image.os', 'ImageOS'),
    ('github.runner.image.version', 'ImageVersion'),
)


def build_resource_attributes(env: Mapping[str, str]) -> Dict[str, Optional[str]]:
    """
    Collect resource attributes from the runner environment.

    Missing variables map to None.
    """
    server = env.get('GITHUB_SERVER_URL')
    repository = env.get('GITHUB_REPOSITORY')
    run_id = env.get('GITHUB_RUN_ID')

    attrs: Dict[str, Optional[str]] = {
        'cicd.pipeline.name': env.get('GITHUB_WORKFLOW'),
        'cicd.pipeline.run.id': run_id,
        'cicd.pipeline.run.url.full': f"{server}/{repository}/actions/runs/{run_id}",
        'cicd.worker.id': env.get('RUNNER_NAME'),
        'cicd.worker.name': env.get('RUNNER_ENVIRONMENT'),
        'vcs.repository.name': repository.split('/')[-1] if repository else None,
        'vcs.repository.url.full': f"{server}/{repository}",
        'vcs.ref.head.name': env.get('GITHUB_REF'),
        'vcs.ref.head.revision': env.get('GITHUB_SHA'),
        'vcs.ref.type': env.get('GITHUB_REF_TYPE'),
    }

    for attribute, variable in _GITHUB_ATTRIBUTES:
        attrs[attribute] = env.get(variable)

    return attrs


def format_resource_attributes(attrs: Mapping[str, Optional[str]]) -> str:
    """OTEL_RESOURCE_ATTRIBUTES form: key=value pairs joined by commas."""
    return ','.join(f"{key}={value if value else ''}" for key, value in attrs.items())


def exporter_environment(config: SidecarConfig, resource_attributes: str) -> Dict[str, str]:
    """
    Variables that point OpenTelemetry SDKs and agents at the sidecar.

    See the SDK environment variable and OTLP exporter specifications.
    """
    def exporter(enabled: bool) -> str:
        return 'otlp' if enabled else 'none'

    return {
        'OTEL_RESOURCE_ATTRIBUTES': resource_attributes,
        'OTEL_EXPORTER_OTLP_PROTOCOL': 'grpc',
        'OTEL_EXPORTER_OTLP_ENDPOINT': f"http://localhost:{config.grpc_port}",
        'OTEL_LOGS_EXPORTER': exporter(config.save_logs),
        'OTEL_METRICS_EXPORTER': exporter(config.save_metrics),
        'OTEL_TRACES_EXPORTER': exporter(config.save_traces),
    }
