"""
CI host interface (GitHub Actions runner).

The runner passes inputs as INPUT_<NAME> environment variables and accepts
outputs, exported environment and the job summary through files named by
GITHUB_OUTPUT, GITHUB_ENV and GITHUB_STEP_SUMMARY.
"""
import logging
import os
import platform
import sys
import tempfile
import uuid
from pathlib import Path
from typing import MutableMapping, Optional

from sidecar.models import ConfigError

logger = logging.getLogger(__name__)

_TRUE_VALUES = ('true', 'True', 'TRUE')
_FALSE_VALUES = ('false', 'False', 'FALSE')

_ARCH_NAMES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'x64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
}


class ActionsHost:
    """
    Key-value configuration source and report sink provided by the runner.

    Args:
        environ: Environment mapping (default: os.environ)
    """

    def __init__(self, environ: Optional[MutableMapping[str, str]] = None):
        self.environ = environ if environ is not None else os.environ

    def get_input(self, name: str, required: bool = False) -> str:
        """
        Read an action input.

        Raises:
            ConfigError: If required and empty
        """
        key = f"INPUT_{name.replace(' ', '_').upper()}"
        value = self.environ.get(key, '').strip()
        if required and not value:
            raise ConfigError(f"Input required and not supplied: {name}")
        return value

    def has_input(self, name: str) -> bool:
        """True if the input was supplied with a non-empty value."""
        return bool(self.get_input(name))

    def get_boolean_input(self, name: str, default: Optional[bool] = None) -> bool:
        """
        Read a boolean input using the YAML 1.2 core schema spellings.

        Raises:
            ConfigError: If the value is not a recognized boolean
        """
        value = self.get_input(name)
        if not value:
            if default is None:
                raise ConfigError(f"Input required and not supplied: {name}")
            return default
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False
        raise ConfigError(
            f"Input does not meet YAML 1.2 \"Core Schema\" specification: {name}\n"
            f"Support boolean input list: `true | True | TRUE | false | False | FALSE`"
        )

    def set_output(self, name: str, value: str) -> None:
        """Publish a step output for later steps."""
        if not self._append_file_command('GITHUB_OUTPUT', name, value):
            logger.info(f"Output {name}={value}")

    def export_variable(self, name: str, value: str) -> None:
        """Export an environment variable to this process and later steps."""
        self.environ[name] = value
        self._append_file_command('GITHUB_ENV', name, value)
        logger.debug(f"Exported {name}")

    def _append_file_command(self, command: str, name: str, value: str) -> bool:
        path = self.environ.get(command)
        if not path:
            return False

        delimiter = f"ghadelimiter_{uuid.uuid4()}"
        if delimiter in name or delimiter in value:
            raise ValueError(f"Unexpected input: value should not contain the delimiter {delimiter}")

        with open(path, 'a', encoding='utf-8') as f:
            f.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
        return True

    @property
    def is_linux(self) -> bool:
        return sys.platform.startswith('linux')

    @property
    def platform(self) -> str:
        return platform.system().lower()

    @property
    def arch(self) -> str:
        machine = platform.machine()
        return _ARCH_NAMES.get(machine.lower(), machine.lower())

    @property
    def runner_temp(self) -> Path:
        return Path(self.environ.get('RUNNER_TEMP') or tempfile.gettempdir())

    @property
    def tool_cache_dir(self) -> Path:
        cache_dir = self.environ.get('RUNNER_TOOL_CACHE')
        if cache_dir:
            return Path(cache_dir)
        return self.runner_temp / 'tool-cache'

    @property
    def summary_path(self) -> Optional[str]:
        return self.environ.get('GITHUB_STEP_SUMMARY') or None

    def env(self, name: str) -> str:
        """Read a runner/context environment variable ('' if unset)."""
        return self.environ.get(name, '')
