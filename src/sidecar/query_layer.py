"""
Telemetry query layer.

Exposes the sidecar's parquet files as DuckDB macros so summary queries can
be written against ``telemetry_logs()``, ``telemetry_traces()`` and friends
without knowing the file layout or the OTLP attribute encoding.

Every attribute list (resource, scope, record level) is flattened into an
array of ``{attr_key, attr_string, attr_int, attr_bool, attr_double,
attr_bytes, attr_array, attr_kvlist}`` structs; exactly one typed field is
populated per entry. The only runtime parameter of the library is the
directory holding the parquet files.
"""
import glob
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from sidecar.commands import CommandResult, run_command
from sidecar.models import SignalKind
from sidecar.tool_cache import quietly_remove

logger = logging.getLogger(__name__)


class QueryExecutionError(Exception):
    """Summary query could not be run or its output parsed."""
    pass


# (flattened field, OTLP AnyValue field)
ATTRIBUTE_VALUE_FIELDS: Tuple[Tuple[str, str], ...] = (
    ('attr_string', 'string_value'),
    ('attr_int', 'int_value'),
    ('attr_bool', 'bool_value'),
    ('attr_double', 'double_value'),
    ('attr_bytes', 'bytes_value'),
    ('attr_array', 'array_value'),
    ('attr_kvlist', 'kvlist_value'),
)

SCALAR_ATTRIBUTE_TYPES = ('string', 'int', 'double', 'bool')


@dataclass(frozen=True)
class Attributes:
    """An attribute list column to flatten."""
    column: str
    alias: Optional[str] = None


Column = Union[str, Attributes]


@dataclass(frozen=True)
class SignalMacro:
    """Table macro normalizing all parquet shards of one signal kind."""
    name: str
    kind: SignalKind
    columns: Tuple[Column, ...]


@dataclass(frozen=True)
class MetricTypeMacro:
    """Table macro selecting one metric type, dropping unrelated columns."""
    name: str
    metric_type: str
    excluded: Tuple[str, ...]


_RESOURCE_AND_SCOPE: Tuple[Column, ...] = (
    Attributes('resource_attributes'),
    'resource_dropped_attributes_count',
    'resource_entity_refs',
    'resource_schema_url',
)

_GAUGE_COLUMNS = ('gauge_type', 'gauge_double', 'gauge_int')
_SUM_COLUMNS = ('sum_type', 'sum_double', 'sum_int')
_HISTOGRAM_COLUMNS = (
    'histogram_count',
    'histogram_sum',
    'histogram_bucket_counts',
    'histogram_explicit_bounds',
    'histogram_min',
    'histogram_max',
)
_EXPONENTIAL_HISTOGRAM_COLUMNS = (
    'exponential_histogram_count',
    'exponential_histogram_sum',
    'exponential_histogram_scale',
    'exponential_histogram_zero_count',
    'exponential_histogram_positive',
    'exponential_histogram_negative',
    'exponential_histogram_min',
    'exponential_histogram_max',
    'exponential_histogram_zero_threshold',
)
_SUMMARY_COLUMNS = ('summary_count', 'summary_sum', 'summary_quantile_values')

LOGS_MACRO = SignalMacro('telemetry_logs', SignalKind.LOGS, (
    'batch_timestamp',
    'batch_UUID',
    'seq_no',
    *_RESOURCE_AND_SCOPE,
    'scope_name',
    'scope_version',
    Attributes('scope_attributes'),
    'scope_dropped_attributes_count',
    'time_unix_nano',
    'observed_time_unix_nano',
    'severity_number',
    'severity_text',
    'body_type',
    'body_string',
    Attributes('attributes'),
    'dropped_attributes_count',
    'flags',
    'trace_id',
    'span_id',
    'event_name',
    'log_schema_url',
    'is_valid',
    'error_message',
))

METRICS_MACRO = SignalMacro('telemetry_metrics', SignalKind.METRICS, (
    'batch_timestamp',
    'batch_UUID',
    'seq_no',
    *_RESOURCE_AND_SCOPE,
    'scope_name',
    'scope_version',
    Attributes('scope_attributes'),
    'scope_dropped_attributes_count',
    'name',
    'description',
    'unit',
    'type',
    'datapoint_seq_no',
    Attributes('attributes'),
    'start_time_unix_nano',
    'time_unix_nano',
    'flags',
    *_GAUGE_COLUMNS,
    *_SUM_COLUMNS,
    *_HISTOGRAM_COLUMNS,
    *_EXPONENTIAL_HISTOGRAM_COLUMNS,
    *_SUMMARY_COLUMNS,
    'aggregation_temporality',
    'is_monotonic',
    'metric_schema_url',
    Attributes('metric_metadata', alias='metadata'),
    'is_valid',
    'error_message',
))

TRACES_MACRO = SignalMacro('telemetry_traces', SignalKind.TRACES, (
    'batch_timestamp',
    'batch_UUID',
    'seq_no',
    *_RESOURCE_AND_SCOPE,
    'scope_name',
    'scope_version',
    Attributes('scope_attributes'),
    'scope_dropped_attributes_count',
    'trace_id',
    'span_id',
    'trace_state',
    'parent_span_id',
    'flags',
    'name',
    'kind',
    'start_time_unix_nano',
    'end_time_unix_nano',
    Attributes('attributes'),
    'dropped_attributes_count',
    'dropped_events_count',
    'dropped_links_count',
    'status',
    'span_schema_url',
    'is_valid',
    'error_message',
))

PROFILES_MACRO = SignalMacro('telemetry_profiles', SignalKind.PROFILES, (
    'batch_timestamp',
    'batch_UUID',
    'resource_seq_no',
    *_RESOURCE_AND_SCOPE,
    'scope_seq_no',
    'scope_name',
    'scope_version',
    Attributes('scope_attributes'),
    'scope_dropped_attributes_count',
    'profile_schema_url',
    'profile_seq_no',
    'profile_id',
    Attributes('profile_attributes'),
    'profile_dropped_attributes_count',
    'original_payload_format',
    'original_payload',
    'time_unix_nano',
    'duration_nano',
    'period_type',
    'period',
    'sample_seq_no',
    Attributes('attributes'),
    'timestamp_unix_nano',
    'trace_id',
    'span_id',
    'value_seq_no',
    'value',
    'sample_type',
    'is_valid',
    'error_message',
))

SIGNAL_MACROS: Tuple[SignalMacro, ...] = (LOGS_MACRO, METRICS_MACRO, TRACES_MACRO, PROFILES_MACRO)

METRIC_TYPE_MACROS: Tuple[MetricTypeMacro, ...] = (
    MetricTypeMacro('telemetry_gauges', 'GAUGE', (
        *_SUM_COLUMNS,
        *_HISTOGRAM_COLUMNS,
        *_EXPONENTIAL_HISTOGRAM_COLUMNS,
        *_SUMMARY_COLUMNS,
        'aggregation_temporality',
        'is_monotonic',
    )),
    MetricTypeMacro('telemetry_sums', 'SUM', (
        *_GAUGE_COLUMNS,
        *_HISTOGRAM_COLUMNS,
        *_EXPONENTIAL_HISTOGRAM_COLUMNS,
        *_SUMMARY_COLUMNS,
    )),
    MetricTypeMacro('telemetry_histograms', 'HISTOGRAM', (
        *_GAUGE_COLUMNS,
        *_SUM_COLUMNS,
        *_EXPONENTIAL_HISTOGRAM_COLUMNS,
        *_SUMMARY_COLUMNS,
        'is_monotonic',
    )),
)

# Bucket i spans (bounds[i-1], bounds[i]]; the first lower and last upper
# bounds are open (null).
HISTOGRAM_BUCKETS_MACRO = """create macro histogram_buckets(histogram_explicit_bounds, histogram_bucket_counts) as
list_transform(
    range(1, len(histogram_bucket_counts) + 1),
    lambda i: {
        'lower_bound': case when i = 1 then null else histogram_explicit_bounds[i - 1] end,
        'upper_bound': case when i > len(histogram_explicit_bounds) then null else histogram_explicit_bounds[i] end,
        'count': histogram_bucket_counts[i]
    }
);
"""


def _sql_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def flatten_attributes(source: str, attributes: Attributes) -> str:
    """SQL expression turning an OTLP KeyValue list into typed attribute structs."""
    fields = [f"'attr_key': attr.key"]
    fields.extend(f"'{flat}': attr.value.{otlp}" for flat, otlp in ATTRIBUTE_VALUE_FIELDS)
    struct = ",\n                ".join(fields)
    return (
        f"array(\n"
        f"        select {{\n"
        f"                {struct}\n"
        f"        }} from (select unnest({source}.{attributes.column}) as attr)\n"
        f"    ) as {attributes.alias or attributes.column}"
    )


def render_attribute_lookup(value_type: str) -> str:
    """Scalar macro returning the first attribute value of a type for a key."""
    return (
        f"create macro attribute_{value_type}(attribute_key, attributes) as (\n"
        f"select\n"
        f"    a.attr_{value_type} as value\n"
        f"from (select unnest(attributes) as a)\n"
        f"where a.attr_key = attribute_key\n"
        f"limit 1\n"
        f");\n"
    )


def render_signal_macro(macro: SignalMacro, parquet_path: str) -> str:
    source = macro.kind.value
    columns = []
    for column in macro.columns:
        if isinstance(column, Attributes):
            columns.append(flatten_attributes(source, column))
        else:
            columns.append(column)

    select_list = "\n    , ".join(columns)
    files = _sql_string(f"{parquet_path}/{macro.kind.value}-*.parquet")
    return (
        f"create macro {macro.name}() as table\n"
        f"select\n"
        f"    {select_list}\n"
        f"from READ_PARQUET({files}) as {source};\n"
    )


def render_metric_type_macro(macro: MetricTypeMacro) -> str:
    excluded = "\n        , ".join(macro.excluded)
    return (
        f"create macro {macro.name}() as table\n"
        f"select\n"
        f"    * exclude (\n"
        f"        {excluded}\n"
        f"    )\n"
        f"from {METRICS_MACRO.name}()\n"
        f"where type = {_sql_string(macro.metric_type)};\n"
    )


def render_macros(parquet_path: str) -> str:
    """
    Render the full macro library for a signals directory.

    Args:
        parquet_path: Directory holding the sidecar's parquet files

    Returns:
        SQL script defining all macros
    """
    parquet_path = str(parquet_path).rstrip('/') or '/'

    parts = [render_attribute_lookup(t) for t in SCALAR_ATTRIBUTE_TYPES]
    for macro in SIGNAL_MACROS:
        parts.append(render_signal_macro(macro, parquet_path))
        if macro is METRICS_MACRO:
            parts.extend(render_metric_type_macro(m) for m in METRIC_TYPE_MACROS)
            parts.append(HISTOGRAM_BUCKETS_MACRO)

    return "\n".join(parts)


def find_query_files(patterns: str, root: Optional[str] = None) -> List[str]:
    """
    Expand newline-separated glob patterns into query files.

    ``**`` matches across directories; a pattern starting with ``!``
    excludes matching files. Relative patterns are resolved against root
    (default: current directory).

    Returns:
        Sorted, de-duplicated absolute paths of regular files
    """
    base = Path(root or os.getcwd())
    includes = []
    excludes = []

    for line in patterns.splitlines():
        pattern = line.strip()
        if not pattern or pattern.startswith('#'):
            continue

        negate = pattern.startswith('!')
        if negate:
            pattern = pattern[1:].strip()

        pattern = os.path.expanduser(pattern)
        if not os.path.isabs(pattern):
            pattern = str(base / pattern)

        (excludes if negate else includes).append(pattern)

    found = set()
    for pattern in includes:
        for match in glob.glob(pattern, recursive=True):
            path = os.path.abspath(match)
            if os.path.isfile(path) and not any(fnmatch(path, ex) for ex in excludes):
                found.add(path)

    return sorted(found)


def parse_rows(output: str) -> List[Dict[str, Any]]:
    """
    Parse the engine's JSON output into rows.

    Raises:
        QueryExecutionError: Output is not a JSON array of objects
    """
    if not output.strip():
        return []

    try:
        rows = json.loads(output)
    except ValueError as e:
        raise QueryExecutionError(f"Malformed JSON output: {e}")

    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
        raise QueryExecutionError("Query output is not a list of rows")

    return rows


def run_summary_query(
    engine_path: str,
    query_file: str,
    parquet_path: str,
    scratch_dir: Optional[str] = None,
    runner: Callable[[List[str]], CommandResult] = run_command,
    init_sql: Sequence[str] = ()
) -> List[Dict[str, Any]]:
    """
    Run one summary query file against the macro library.

    Any failure is logged as a warning and yields an empty result, so one
    bad query never stops the rest of the report.

    Args:
        engine_path: DuckDB CLI executable
        query_file: SQL file to run
        parquet_path: Signals directory the macros read from
        scratch_dir: Directory for the temporary init file
        runner: Command primitive
        init_sql: Extra statements appended to the init script

    Returns:
        Rows as dicts in column order, or [] on failure
    """
    init_path = None

    try:
        if not engine_path or not Path(engine_path).exists():
            raise QueryExecutionError(f"Query engine not found: {engine_path!r}")

        fd, init_path = tempfile.mkstemp(prefix='macros-', suffix='.sql', dir=scratch_dir)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(render_macros(parquet_path))
            for statement in init_sql:
                f.write(statement.rstrip().rstrip(';') + ";\n")

        result = runner([engine_path, '-json', ':memory:', '-init', init_path, '-f', query_file])

        if not result.ok:
            detail = result.stderr.strip()
            raise QueryExecutionError(
                f"DB client failed with exit code: {result.exit_code}"
                + (f": {detail}" if detail else "")
            )

        rows = parse_rows(result.stdout)
        logger.debug(f"Summary query {query_file} returned {len(rows)} rows")
        return rows

    except Exception as e:
        logger.warning(f"Could not run summary query {query_file}: {e}")
        return []

    finally:
        if init_path:
            quietly_remove(init_path)
