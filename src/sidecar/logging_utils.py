"""
Logging utilities for the telemetry sidecar.

Provides:
- Structured logging with key=value fields
- Phase correlation context (setup / teardown)
- Performance timing utilities
- Optional JSON output
- GitHub Actions workflow commands for annotations and log groups
"""
import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from typing import Dict, Any, Optional
from contextlib import contextmanager


# Context variables for correlation IDs
_phase: ContextVar[Optional[str]] = ContextVar('phase', default=None)
_run_id: ContextVar[Optional[str]] = ContextVar('run_id', default=None)


class StructuredFormatter(logging.Formatter):
    """
    Formatter that adds phase correlation and structured fields.

    Format: [timestamp] [level] [component] correlation_ids key=value message
    """

    def __init__(self, json_output: bool = False):
        """
        Initialize formatter.

        Args:
            json_output: If True, output JSON lines instead of human-readable
        """
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with correlation IDs and structured fields."""

        if self.json_output:
            return self._format_json(record)
        else:
            return self._format_human(record)

    def _format_human(self, record: logging.LogRecord) -> str:
        """Human-readable format with key=value pairs."""
        timestamp = self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S')
        timestamp = f"{timestamp}.{int(record.msecs):03d}Z"

        component = record.name.split('.')[-1]

        corr_parts = []

        phase = _phase.get()
        if phase:
            corr_parts.append(f"phase={phase}")

        run_id = _run_id.get()
        if run_id:
            corr_parts.append(f"run={run_id}")

        extra_fields = []
        if hasattr(record, 'fields') and isinstance(record.fields, dict):
            for key, value in record.fields.items():
                extra_fields.append(f"{key}={value}")

        parts = [
            f"[{timestamp}]",
            f"[{record.levelname}]",
            f"[{component}]"
        ]

        if corr_parts:
            parts.append(" ".join(corr_parts))

        if extra_fields:
            parts.append(" ".join(extra_fields))

        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)

        return result

    def _format_json(self, record: logging.LogRecord) -> str:
        """JSON format for machine parsing."""
        timestamp = self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S')
        timestamp = f"{timestamp}.{int(record.msecs):03d}Z"

        log_entry: Dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "component": record.name.split('.')[-1],
            "message": record.getMessage()
        }

        phase = _phase.get()
        if phase:
            log_entry["phase"] = phase

        run_id = _run_id.get()
        if run_id:
            log_entry["run_id"] = run_id

        if hasattr(record, 'fields') and isinstance(record.fields, dict):
            log_entry.update(record.fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, separators=(',', ':'), default=str)


class WorkflowCommandHandler(logging.Handler):
    """
    Mirrors warnings and errors as GitHub Actions workflow commands.

    The runner turns ``::warning::`` and ``::error::`` lines on stdout into
    annotations on the job page.
    """

    def __init__(self, stream=None):
        super().__init__(level=logging.WARNING)
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            command = "error" if record.levelno >= logging.ERROR else "warning"
            message = escape_command_data(record.getMessage())
            stream = self.stream or sys.stdout
            stream.write(f"::{command}::{message}\n")
            stream.flush()
        except Exception:
            self.handleError(record)


def escape_command_data(value: str) -> str:
    """Escape a workflow command payload (%, CR and LF)."""
    return value.replace('%', '%25').replace('\r', '%0D').replace('\n', '%0A')


def set_correlation_ids(
    phase: Optional[str] = None,
    run_id: Optional[str] = None
) -> None:
    """
    Set correlation IDs for current context.

    These IDs will be automatically included in all log messages
    until cleared or updated.

    Args:
        phase: Lifecycle phase name (setup or teardown)
        run_id: CI run identifier
    """
    if phase is not None:
        _phase.set(phase)
    if run_id is not None:
        _run_id.set(run_id)


def get_correlation_ids() -> Dict[str, Optional[str]]:
    """
    Get current correlation IDs.

    Returns:
        Dict with phase and run_id
    """
    return {
        'phase': _phase.get(),
        'run_id': _run_id.get()
    }


@contextmanager
def correlation_context(
    phase: Optional[str] = None,
    run_id: Optional[str] = None
):
    """
    Context manager for temporary correlation IDs.

    IDs are restored to previous values when context exits.

    Example:
        with correlation_context(phase="teardown"):
            logger.info("Stopping agents")  # phase=teardown included
    """
    old_phase = _phase.get()
    old_run = _run_id.get()

    try:
        set_correlation_ids(phase, run_id)
        yield
    finally:
        _phase.set(old_phase)
        _run_id.set(old_run)


@contextmanager
def log_duration(operation: str, logger: Optional[logging.Logger] = None, **extra_fields):
    """
    Context manager that logs duration of an operation.

    Args:
        operation: Name of operation being timed
        logger: Logger to use (default: root logger)
        **extra_fields: Additional fields to include in log

    Example:
        with log_duration("teardown", queries=2):
            run_teardown()
        # Logs: operation=teardown duration_ms=1234 queries=2
    """
    if logger is None:
        logger = logging.getLogger()

    start_time = time.time()

    try:
        yield
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        fields = {
            'operation': operation,
            'duration_ms': duration_ms,
            **extra_fields
        }
        logger.info(
            f"Operation completed: {operation}",
            extra={'fields': fields}
        )


@contextmanager
def log_group(title: str, stream=None):
    """
    Fold everything logged inside the block into a collapsible group.

    Args:
        title: Group title shown in the job log
        stream: Output stream (default: stdout)
    """
    out = stream or sys.stdout
    out.write(f"::group::{title}\n")
    out.flush()
    try:
        yield
    finally:
        out.write("::endgroup::\n")
        out.flush()


def log_with_fields(logger: logging.Logger, level: int, message: str, **fields):
    """
    Log a message with structured fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, logging.ERROR, etc.)
        message: Log message
        **fields: Structured fields as keyword arguments

    Example:
        log_with_fields(logger, logging.INFO, "Agent launched",
                       kind="profiler", pid=1234)
    """
    logger.log(level, message, extra={'fields': fields})


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    module_levels: Optional[Dict[str, str]] = None,
    workflow_commands: Optional[bool] = None
) -> None:
    """
    Setup logging configuration for the sidecar.

    Args:
        level: Global log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Enable JSON output instead of human-readable
        log_file: Optional log file path (in addition to stdout)
        module_levels: Per-module log levels, e.g. {'supervisor': 'DEBUG'}
        workflow_commands: Emit ::warning::/::error:: annotations
            (default: only when GITHUB_ACTIONS=true)

    Environment Variables:
        OTEL_SIDECAR_LOG_LEVEL: Override log level
        OTEL_SIDECAR_LOG_JSON: Enable JSON output (1 or 0)
        RUNNER_DEBUG: Runner step debug logging (1 forces DEBUG)
    """
    level = os.getenv('OTEL_SIDECAR_LOG_LEVEL', level).upper()
    if os.getenv('RUNNER_DEBUG') == '1':
        level = 'DEBUG'
    json_output = os.getenv('OTEL_SIDECAR_LOG_JSON', '0') == '1' or json_output
    if workflow_commands is None:
        workflow_commands = os.getenv('GITHUB_ACTIONS') == 'true'

    if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
        logging.warning(f"Invalid log level '{level}', using INFO")
        level = 'INFO'

    formatter = StructuredFormatter(json_output=json_output)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if workflow_commands:
        root_logger.addHandler(WorkflowCommandHandler())

    if log_file:
        try:
            log_path = os.path.dirname(log_file)
            if log_path and not os.path.exists(log_path):
                os.makedirs(log_path, mode=0o755)

            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logging.info(f"Logging to file: {log_file}")
        except Exception as e:
            logging.error(f"Failed to setup file logging: {e}")

    if module_levels:
        for module_name, module_level in module_levels.items():
            module_level_upper = module_level.upper()
            if module_level_upper in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
                module_logger = logging.getLogger(f'sidecar.{module_name}')
                module_logger.setLevel(getattr(logging, module_level_upper))
                logging.debug(f"Set log level for {module_name}: {module_level_upper}")
            else:
                logging.warning(f"Invalid log level for module {module_name}: {module_level}")

    logging.debug(f"Logging initialized: level={level}, json={json_output}, file={log_file}")
