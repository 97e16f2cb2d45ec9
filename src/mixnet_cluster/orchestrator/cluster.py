"""Launch, observe and stop every role instance of a wired cluster."""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional

from mixnet_cluster.config.documents import MailProxyConfig, Role, RoleConfig
from mixnet_cluster.config.settings import ClusterSettings
from mixnet_cluster.errors import LaunchFailure, ProvisioningFailure, TailFailure
from mixnet_cluster.management import ProviderUnavailable, provision_user
from mixnet_cluster.orchestrator.process import ServerFactory, ServerProcess, subprocess_factories
from mixnet_cluster.orchestrator.tailer import LogSink, LogTailer
from mixnet_cluster.synthesis import ClusterState
from mixnet_cluster.utils import ClusterMetrics, RetryError, get_logger, retry

logger = get_logger("orchestrator")


class InstanceState(str, Enum):
    CONFIGURED = "configured"
    LAUNCHING = "launching"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass
class Instance:
    config: RoleConfig
    state: InstanceState = InstanceState.CONFIGURED
    server: Optional[ServerProcess] = None
    tailer: Optional[LogTailer] = None
    event_thread: Optional[threading.Thread] = None

    @property
    def name(self) -> str:
        return self.config.identifier

    @property
    def role(self) -> Role:
        return self.config.role


class ClusterOrchestrator:
    """
    Owns the running processes and log tailers of one cluster.

    Nodes are launched before authorities. Shutdown stops every instance,
    waits for each to exit, then lets every tailer drain to end-of-file
    before returning, so no log line written before exit is lost.
    """

    def __init__(
        self,
        state: ClusterState,
        sink: LogSink,
        factories: Optional[Mapping[Role, ServerFactory]] = None,
        settings: Optional[ClusterSettings] = None,
        metrics: Optional[ClusterMetrics] = None,
    ) -> None:
        self.state = state
        self.sink = sink
        self.settings = settings or ClusterSettings()
        self.factories: Dict[Role, ServerFactory] = (
            dict(factories) if factories is not None else subprocess_factories(self.settings)
        )
        self.metrics = metrics or ClusterMetrics()
        self._lock = threading.Lock()
        self._instances: Dict[str, Instance] = {}
        self._tailers: List[LogTailer] = []
        self._failures: List[TailFailure] = []
        self._shut_down = False
        for cfg in state.all_configs():
            self._register(cfg)

    def __enter__(self) -> "ClusterOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.shutdown()

    def _register(self, config: RoleConfig) -> Instance:
        if config.identifier in self._instances:
            raise LaunchFailure(f"Duplicate instance identifier '{config.identifier}'", role=config.role.value)
        instance = Instance(config=config)
        self._instances[config.identifier] = instance
        self.metrics.transition(config.role.value, None, InstanceState.CONFIGURED.value)
        return instance

    def _set_state(self, instance: Instance, new_state: InstanceState) -> None:
        old_state = instance.state
        instance.state = new_state
        self.metrics.transition(instance.role.value, old_state.value, new_state.value)
        logger.debug(f"{instance.name}: {old_state.value} -> {new_state.value}")

    def instance(self, identifier: str) -> Instance:
        return self._instances[identifier]

    def instances(self) -> List[Instance]:
        return list(self._instances.values())

    def states(self) -> Dict[str, InstanceState]:
        return {name: inst.state for name, inst in self._instances.items()}

    @property
    def tailers(self) -> List[LogTailer]:
        with self._lock:
            return list(self._tailers)

    def launch(self, config: RoleConfig) -> ServerProcess:
        """Validate ``config``, start its server and attach a log tailer."""
        if self._shut_down:
            raise LaunchFailure("Cluster has been shut down", role=config.role.value)
        instance = self._instances.get(config.identifier) or self._register(config)
        if instance.state is not InstanceState.CONFIGURED:
            raise LaunchFailure(f"'{config.identifier}' is already {instance.state.value}", role=config.role.value)

        config.fixup_and_validate()
        factory = self.factories.get(config.role)
        if factory is None:
            raise LaunchFailure(f"No server factory for role '{config.role.value}'", role=config.role.value)

        self._set_state(instance, InstanceState.LAUNCHING)
        started = time.monotonic()
        try:
            server = factory(config)
        except LaunchFailure:
            self._set_state(instance, InstanceState.STOPPED)
            raise
        except Exception as exc:
            self._set_state(instance, InstanceState.STOPPED)
            raise LaunchFailure(f"Failed to launch '{config.identifier}': {exc}", role=config.role.value) from exc
        instance.server = server
        self._set_state(instance, InstanceState.RUNNING)
        self.metrics.observe_launch(config.role.value, time.monotonic() - started)
        self._start_tailer(instance)
        logger.info(f"Launched {config.role.value} {config.identifier}")
        return server

    def _start_tailer(self, instance: Instance) -> None:
        name = instance.name
        tailer = LogTailer(
            prefix=name,
            path=instance.config.log_path,
            sink=self.sink,
            is_running=lambda: instance.state is InstanceState.RUNNING,
            poll_interval=self.settings.tail_poll_interval,
            open_timeout=self.settings.tail_open_timeout,
            on_line=lambda _line: self.metrics.add_log_line(name),
            on_failure=self._record_failure,
            role=instance.role.value,
        )
        with self._lock:
            self._tailers.append(tailer)
        instance.tailer = tailer
        tailer.start()

    def _record_failure(self, error: TailFailure) -> None:
        with self._lock:
            self._failures.append(error)

    def launch_all(self) -> None:
        """Launch every node, then the authorities; the first failure aborts."""
        for cfg in self.state.nodes:
            self.launch(cfg)
        for cfg in self.state.authorities:
            self.launch(cfg)
        logger.info(
            f"Cluster running: {len(self.state.nodes)} nodes, {len(self.state.authorities)} authorities"
        )

    def provision_accounts(self, retries: int = 10, backoff: float = 0.2) -> None:
        """Create every mail-proxy account on its provider over the management socket."""
        for proxy in self.state.mail_proxies:
            for account in proxy.accounts:
                provider = self.state.find_provider(account.provider)
                if self._instances[provider.identifier].state is not InstanceState.RUNNING:
                    raise ProvisioningFailure(f"Provider '{provider.identifier}' is not running")
                socket_path = provider.management_socket
                try:
                    retry(
                        lambda: provision_user(socket_path, account.user, account.link_key.public_key),
                        retries=retries,
                        backoff=backoff,
                        exceptions=(ProviderUnavailable,),
                        on_retry=lambda attempt, exc: logger.debug(f"Provider not ready (attempt {attempt}): {exc}"),
                    )
                except RetryError as exc:
                    raise ProvisioningFailure(
                        f"Provider '{provider.identifier}' management socket never became available"
                    ) from exc
                self.metrics.add_provisioned_user(provider.identifier)

    def launch_mail_proxies(self) -> None:
        for cfg in self.state.mail_proxies:
            server = self.launch(cfg)
            events = getattr(server, "events", None)
            if callable(events):
                instance = self._instances[cfg.identifier]
                thread = threading.Thread(
                    target=self._consume_events,
                    args=(cfg, events()),
                    name=f"events-{cfg.identifier}",
                    daemon=True,
                )
                instance.event_thread = thread
                thread.start()

    def _consume_events(self, config: MailProxyConfig, events: Iterable[Dict]) -> None:
        name = config.identifier
        for event in events:
            logger.info(f"{name}: Event: {event}")
            if event.get("type") != "kaetzchen_reply":
                continue
            # Replies are assumed to come from the keyserver.
            if event.get("error"):
                logger.warning(f"{name}: Keyserver query failed: {event['error']}")
            else:
                logger.info(f"{name}: Keyserver reply: {event.get('user')} -> {event.get('key')}")

    def check(self) -> None:
        """Raise the first recorded tailer failure; those are fatal to the cluster."""
        with self._lock:
            if self._failures:
                raise self._failures[0]

    def shutdown(self) -> None:
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True

        running = [i for i in self._instances.values() if i.state is InstanceState.RUNNING]
        for instance in running:
            self._set_state(instance, InstanceState.SHUTTING_DOWN)
            instance.server.shutdown()
        try:
            for instance in running:
                instance.server.wait()
                self._set_state(instance, InstanceState.STOPPED)
        finally:
            tailers = self.tailers
            for tailer in tailers:
                tailer.stop_at_eof()
            for tailer in tailers:
                tailer.join()
        for instance in running:
            if instance.event_thread is not None:
                instance.event_thread.join()
        logger.info("Terminated.")
