"""
Process and container supervisor.

Launches the telemetry sidecar container and the detached collector agents
during setup, and stops them during teardown. Only identities (container id,
pids) and config file paths are kept; they cross into the teardown run
through the lifecycle state store.

Stop order: profiler -> host collector -> sidecar container. Producers go
first so nothing writes into the signals directory after the sidecar has
flushed. Every stop step is independent: a failure is logged and the next
step still runs.
"""
import logging
import os
import signal
import tempfile
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from sidecar.commands import CommandResult, run_command, spawn_detached
from sidecar.logging_utils import log_group, log_with_fields
from sidecar.models import ManagedProcess, ProcessKind, ProcessState
from sidecar.state_store import (
    CONTAINER_ID,
    HOST_COLLECTOR_CONFIG,
    HOST_COLLECTOR_PID,
    PROFILER_CONFIG,
    PROFILER_PID,
    LifecycleStateStore,
)
from sidecar.tool_cache import quietly_remove

logger = logging.getLogger(__name__)

SIDECAR_GRPC_PORT = 4317
SIDECAR_HTTP_PORT = 4318
SIDECAR_SIGNALS_MOUNT = '/parquet'


class LaunchFailed(Exception):
    """A managed process could not be started."""
    pass


class StopFailed(Exception):
    """A managed process could not be stopped (never fatal)."""
    pass


class ProcessSupervisor:
    """
    Starts and stops the sidecar and agents.

    Args:
        config_dir: Directory for generated agent config files
        runner: Command primitive (argv -> CommandResult)
        spawner: Detached spawn primitive (argv -> pid)
        killpg: Process-group kill for unprivileged agents
    """

    def __init__(
        self,
        config_dir: Path,
        runner: Callable[[List[str]], CommandResult] = run_command,
        spawner: Callable[[List[str]], int] = spawn_detached,
        killpg: Callable[[int, int], None] = os.killpg
    ):
        self.config_dir = Path(config_dir)
        self.runner = runner
        self.spawner = spawner
        self.killpg = killpg

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    def launch_sidecar(
        self,
        signals_path: str,
        resource_attributes: str,
        grpc_port: int,
        http_port: int,
        image: str
    ) -> ManagedProcess:
        """
        Start the sidecar as a detached container.

        Raises:
            LaunchFailed: Non-zero exit or no container id
        """
        container = ManagedProcess(kind=ProcessKind.CONTAINER)
        container.transition(ProcessState.LAUNCHING)

        result = self.runner([
            'docker', 'run', '-d',
            '-e', f"DEFAULT_RESOURCE_ATTRIBUTES={resource_attributes}",
            '-p', f"{grpc_port}:{SIDECAR_GRPC_PORT}",
            '-p', f"{http_port}:{SIDECAR_HTTP_PORT}",
            '-v', f"{signals_path}:{SIDECAR_SIGNALS_MOUNT}:z",
            image,
        ])

        if not result.ok:
            container.transition(ProcessState.STOPPED)
            raise LaunchFailed(
                f"Failed to launch server container, exit code: {result.exit_code}"
                + (f": {result.stderr.strip()}" if result.stderr.strip() else "")
            )

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            container.transition(ProcessState.STOPPED)
            raise LaunchFailed("Failed to launch server container: no container id returned")

        container.identity = lines[-1]
        container.transition(ProcessState.RUNNING)

        log_with_fields(
            logger, logging.INFO, "Launched telemetry server container",
            container=container.identity[:12], image=image, grpc_port=grpc_port, http_port=http_port
        )
        return container

    def launch_agent(
        self,
        kind: ProcessKind,
        executable: str,
        config_text: str,
        privileged: bool = False,
        extra_args: Iterable[str] = ()
    ) -> ManagedProcess:
        """
        Write the agent config to a temp file and spawn the agent detached.

        An agent that starts and then dies is only noticed when teardown
        tries to stop it.

        Raises:
            LaunchFailed: The program could not be started at all
        """
        agent = ManagedProcess(kind=kind)
        agent.transition(ProcessState.LAUNCHING)

        self.config_dir.mkdir(parents=True, exist_ok=True)
        fd, config_path = tempfile.mkstemp(prefix=f"{kind.value}-", suffix='.yaml', dir=self.config_dir)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(config_text)
        agent.config_path = config_path

        argv = [executable, f"--config=file:{config_path}", *extra_args]
        if privileged:
            argv = ['sudo', *argv]

        try:
            pid = self.spawner(argv)
        except OSError as e:
            agent.transition(ProcessState.STOPPED)
            quietly_remove(config_path)
            raise LaunchFailed(f"Failed to launch {kind.value} agent {executable}: {e}")

        agent.identity = str(pid)
        agent.transition(ProcessState.RUNNING)

        log_with_fields(
            logger, logging.INFO, f"Launched {kind.value} agent",
            pid=pid, config=config_path, privileged=privileged
        )
        return agent

    def launch_profiler(self, executable: str, config_text: str) -> ManagedProcess:
        """eBPF profiling needs root and the profiles feature gate."""
        return self.launch_agent(
            ProcessKind.PROFILER_AGENT,
            executable,
            config_text,
            privileged=True,
            extra_args=['--feature-gates=service.profilesSupport']
        )

    def launch_host_collector(self, executable: str, config_text: str) -> ManagedProcess:
        return self.launch_agent(ProcessKind.HOST_COLLECTOR_AGENT, executable, config_text)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop_agent(self, agent: ManagedProcess, privileged: bool = False) -> None:
        """
        Kill an agent's process group.

        Raises:
            StopFailed: Kill failed (agent already gone, no permission, ...)
        """
        agent.transition(ProcessState.STOPPING)
        try:
            pid = agent.pid
        except ValueError:
            raise StopFailed(f"Invalid {agent.kind.value} pid: {agent.identity!r}")

        logger.debug(f"Stopping {agent.kind.value} pid {pid}")

        if privileged:
            result = self.runner(['sudo', 'kill', '-KILL', '--', f"-{pid}"])
            if not result.ok:
                raise StopFailed(
                    f"kill of {agent.kind.value} pid {pid} exited with {result.exit_code}"
                )
        else:
            try:
                self.killpg(pid, signal.SIGKILL)
            except OSError as e:
                raise StopFailed(f"kill of {agent.kind.value} pid {pid} failed: {e}")

        agent.transition(ProcessState.STOPPED)
        logger.info(f"Stopped {agent.kind.value} agent pid {pid}")

    def stop_sidecar(self, container: ManagedProcess, timeout: int = 10) -> None:
        """
        Gracefully stop the sidecar container and dump its logs.

        Raises:
            StopFailed: docker stop exited non-zero (logs are still dumped)
        """
        container.transition(ProcessState.STOPPING)
        logger.debug(f"Shutting down server container {container.identity}")

        result = self.runner(['docker', 'stop', '-t', str(timeout), container.identity])

        with log_group('Telemetry server logs'):
            logs = self.runner(['docker', 'container', 'logs', container.identity])
            for line in (logs.stdout + logs.stderr).splitlines():
                logger.info(line)

        if not result.ok:
            raise StopFailed(
                f"Server container stop command failed with exit code: {result.exit_code}"
            )

        container.transition(ProcessState.STOPPED)

    def stop_all(self, store: LifecycleStateStore, timeout: int = 10) -> List[ManagedProcess]:
        """
        Stop everything setup recorded, in order, each step independent.

        Returns:
            The processes that were found in the store
        """
        found = []

        steps = [
            (ProcessKind.PROFILER_AGENT, PROFILER_PID, PROFILER_CONFIG),
            (ProcessKind.HOST_COLLECTOR_AGENT, HOST_COLLECTOR_PID, HOST_COLLECTOR_CONFIG),
            (ProcessKind.CONTAINER, CONTAINER_ID, None),
        ]

        for kind, identity_key, config_key in steps:
            identity = store.get(identity_key)
            if not identity:
                logger.debug(f"No {kind.value} recorded, skipping stop")
                continue

            process = ManagedProcess(
                kind=kind,
                identity=identity,
                config_path=store.get(config_key) if config_key else None,
                state=ProcessState.RUNNING
            )
            found.append(process)

            try:
                if kind == ProcessKind.CONTAINER:
                    self.stop_sidecar(process, timeout)
                else:
                    self.stop_agent(process, privileged=(kind == ProcessKind.PROFILER_AGENT))
            except Exception as e:
                logger.warning(f"Ignoring error when stopping {kind.value}: {e}")

        return found

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    @staticmethod
    def cleanup(paths: Iterable[Optional[str]]) -> None:
        """Remove each path independently; failures are logged only."""
        for path in paths:
            if path:
                logger.info(f"Deleting {path}")
                quietly_remove(path)
