"""Handles for launched role-instance server processes."""

import json
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from mixnet_cluster.config.documents import Role, RoleConfig
from mixnet_cluster.config.settings import ClusterSettings
from mixnet_cluster.errors import LaunchFailure
from mixnet_cluster.utils import get_logger

logger = get_logger("process")

PROCESS_OUTPUT_FILE = "process.out"


class ServerProcess(ABC):
    """The only control surface the orchestrator needs from a running instance."""

    @abstractmethod
    def shutdown(self) -> None:
        """Ask the instance to stop. Idempotent and non-blocking."""

    @abstractmethod
    def wait(self) -> None:
        """Block until the instance has fully stopped."""


ServerFactory = Callable[[RoleConfig], ServerProcess]


def render_command(template: List[str], config: RoleConfig) -> List[str]:
    return [part.format(config=config.document_path, data_dir=config.data_dir) for part in template]


class SubprocessServer(ServerProcess):
    """
    Runs an instance as a child process started from its config document.

    The process must survive ``startup_grace`` seconds to count as started;
    after :meth:`shutdown` it gets ``kill_timeout`` seconds to exit on SIGTERM
    before it is killed.
    """

    def __init__(
        self,
        argv: List[str],
        config: RoleConfig,
        startup_grace: float = 0.5,
        kill_timeout: float = 10.0,
        capture_stdout: bool = False,
    ) -> None:
        self.argv = argv
        self.name = config.identifier
        self.kill_timeout = kill_timeout
        self._lock = threading.Lock()
        self._stopping = False
        output_path = Path(config.data_dir) / PROCESS_OUTPUT_FILE
        try:
            self._output = open(output_path, "ab")
        except OSError as exc:
            raise LaunchFailure(f"Cannot open {output_path}: {exc}", role=config.role.value) from exc
        try:
            self._proc = subprocess.Popen(
                argv,
                cwd=config.data_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE if capture_stdout else self._output,
                stderr=self._output,
                text=capture_stdout,
            )
        except (OSError, ValueError) as exc:
            self._output.close()
            raise LaunchFailure(f"Failed to start {argv[0]!r}: {exc}", role=config.role.value) from exc
        try:
            code = self._proc.wait(timeout=startup_grace) if startup_grace > 0 else self._proc.poll()
        except subprocess.TimeoutExpired:
            code = None
        if code is not None:
            self._output.close()
            raise LaunchFailure(
                f"'{self.name}' exited with status {code} during startup (see {output_path})",
                role=config.role.value,
            )
        logger.info(f"Started {self.name} (pid {self._proc.pid}): {' '.join(argv)}")

    @property
    def pid(self) -> int:
        return self._proc.pid

    def shutdown(self) -> None:
        with self._lock:
            if self._stopping:
                return
            self._stopping = True
        if self._proc.poll() is None:
            self._proc.terminate()

    def wait(self) -> None:
        try:
            self._proc.wait(timeout=self.kill_timeout if self._stopping else None)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.name} ignored SIGTERM for {self.kill_timeout}s; killing")
            self._proc.kill()
            self._proc.wait()
        finally:
            self._output.close()


class MailProxyProcess(SubprocessServer):
    """Mail proxy whose stdout carries its event stream as JSON lines."""

    def __init__(self, argv: List[str], config: RoleConfig, startup_grace: float = 0.5, kill_timeout: float = 10.0) -> None:
        super().__init__(argv, config, startup_grace=startup_grace, kill_timeout=kill_timeout, capture_stdout=True)

    def events(self) -> Iterator[Dict]:
        stream = self._proc.stdout
        if stream is None:
            return
        for line in stream:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                event = {"type": "raw", "text": line}
            if not isinstance(event, dict):
                event = {"type": "raw", "text": line}
            yield event


def subprocess_factories(settings: Optional[ClusterSettings] = None) -> Dict[Role, ServerFactory]:
    """Default role -> factory map, starting each role from ``settings.commands``."""
    settings = settings or ClusterSettings()

    def make(role: Role) -> ServerFactory:
        template = settings.commands[role.value]
        server_cls = MailProxyProcess if role is Role.MAIL_PROXY else SubprocessServer

        def factory(config: RoleConfig) -> ServerProcess:
            return server_cls(render_command(template, config), config, startup_grace=settings.startup_grace)

        return factory

    return {role: make(role) for role in Role}
