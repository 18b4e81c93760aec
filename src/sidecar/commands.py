"""
External program execution.

Two primitives:
- run_command: run a program to completion, capture output, return status
- spawn_detached: start a program in its own session and forget it
"""
import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

# Shell convention for "command not found"
EXIT_NOT_FOUND = 127


@dataclass
class CommandResult:
    """Outcome of a finished external command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_command(argv: List[str], timeout: Optional[float] = None) -> CommandResult:
    """
    Run a program and wait for it.

    Args:
        argv: Program and arguments
        timeout: Optional limit in seconds

    Returns:
        CommandResult; a missing program yields exit code 127
    """
    logger.debug(f"[command]{' '.join(argv)}")

    try:
        completed = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False
        )
    except FileNotFoundError as e:
        return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=str(e))
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
        return CommandResult(exit_code=-1, stdout=stdout, stderr=f"Timed out after {timeout}s")

    return CommandResult(
        exit_code=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr
    )


def spawn_detached(argv: List[str]) -> int:
    """
    Start a program that outlives this process.

    The child gets its own session (so its pid is also its process group id)
    and no stdio. No handle is kept; the caller records the pid and stops it
    later with an explicit kill.

    Returns:
        Process id

    Raises:
        OSError: If the program cannot be started
    """
    logger.debug(f"[spawn]{' '.join(argv)}")

    proc = subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True
    )
    # The handle is dropped on purpose; teardown stops the child by pid
    return proc.pid
