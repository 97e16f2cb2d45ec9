import io
import threading
from pathlib import Path
from typing import Dict, Iterator, List

import pytest

from mixnet_cluster.config import ClusterSettings, Role, RoleConfig
from mixnet_cluster.errors import ConfigInvalid, LaunchFailure, ProvisioningFailure, TailFailure
from mixnet_cluster.orchestrator import ClusterOrchestrator, InstanceState, LogSink, ServerProcess
from mixnet_cluster.synthesis import AuthorityMode, ClusterBuilder, NodeKind
from mixnet_cluster.utils import ClusterMetrics

LINES_BEFORE_SHUTDOWN = 20


class FakeServer(ServerProcess):
    """Writes numbered lines to its log file, plus a final burst on shutdown."""

    def __init__(self, config: RoleConfig) -> None:
        self.name = config.identifier
        self.path = config.log_path
        self.stopped = threading.Event()
        self.shutdown_calls = 0
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        with open(self.path, "w") as fh:
            for i in range(LINES_BEFORE_SHUTDOWN):
                fh.write(f"{self.name} msg {i}\n")
                fh.flush()
            self.stopped.wait()
            fh.write(f"{self.name} Shutting down\n")
            fh.write(f"{self.name} Shutdown complete")

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        self.stopped.set()

    def wait(self) -> None:
        self._thread.join()


class FakeMailProxy(FakeServer):
    def events(self) -> Iterator[Dict]:
        yield {"type": "connection_status", "connected": True}
        yield {"type": "kaetzchen_reply", "user": "bob", "key": "abcd"}


class Recorder:
    def __init__(self, server_cls=FakeServer) -> None:
        self.order: List[str] = []
        self.servers: Dict[str, FakeServer] = {}
        self.server_cls = server_cls

    def __call__(self, config: RoleConfig) -> ServerProcess:
        self.order.append(config.identifier)
        server = self.server_cls(config)
        self.servers[config.identifier] = server
        return server


def _cluster(base: Path, voting: bool = True, users: List[str] = ()):
    builder = ClusterBuilder(base, base_port=30000)
    if voting:
        builder.synthesize_authority(AuthorityMode.VOTING, 3)
    else:
        builder.synthesize_authority(AuthorityMode.SINGLE)
    builder.synthesize_node(NodeKind.PROVIDER)
    builder.synthesize_node(NodeKind.MIX)
    builder.synthesize_node(NodeKind.MIX)
    for user in users:
        builder.synthesize_mail_proxy(user, "provider-0")
    return builder.wire()


def _settings() -> ClusterSettings:
    return ClusterSettings(tail_poll_interval=0.01, tail_open_timeout=2.0)


def _orchestrator(state, factory, out: io.StringIO, metrics: ClusterMetrics = None) -> ClusterOrchestrator:
    factories = {role: factory for role in Role}
    return ClusterOrchestrator(state, LogSink([out]), factories=factories, settings=_settings(), metrics=metrics)


def test_launch_order_and_states(tmp_path: Path) -> None:
    state = _cluster(tmp_path)
    recorder = Recorder()
    out = io.StringIO()
    orchestrator = _orchestrator(state, recorder, out)
    assert set(orchestrator.states().values()) == {InstanceState.CONFIGURED}

    orchestrator.launch_all()
    node_ids = [cfg.identifier for cfg in state.nodes]
    authority_ids = [cfg.identifier for cfg in state.authorities]
    assert recorder.order == node_ids + authority_ids
    assert set(orchestrator.states().values()) == {InstanceState.RUNNING}
    assert len(orchestrator.tailers) == 6

    orchestrator.shutdown()
    assert set(orchestrator.states().values()) == {InstanceState.STOPPED}
    assert all(not t.is_alive() for t in orchestrator.tailers)


def test_shutdown_drains_every_line_exactly_once(tmp_path: Path) -> None:
    state = _cluster(tmp_path)
    recorder = Recorder()
    out = io.StringIO()
    with _orchestrator(state, recorder, out) as orchestrator:
        orchestrator.launch_all()
    lines = out.getvalue().splitlines()
    for name in recorder.servers:
        own = [line for line in lines if line.startswith(f"{name} ")]
        expected = [f"{name} {name} msg {i}" for i in range(LINES_BEFORE_SHUTDOWN)]
        expected += [f"{name} {name} Shutting down", f"{name} {name} Shutdown complete"]
        assert own == expected


def test_shutdown_is_idempotent(tmp_path: Path) -> None:
    state = _cluster(tmp_path, voting=False)
    recorder = Recorder()
    orchestrator = _orchestrator(state, recorder, io.StringIO())
    orchestrator.launch_all()
    orchestrator.shutdown()
    orchestrator.shutdown()
    assert all(s.shutdown_calls == 1 for s in recorder.servers.values())
    with pytest.raises(LaunchFailure):
        orchestrator.launch(state.nodes[0])


def test_launch_failure_stops_instance(tmp_path: Path) -> None:
    state = _cluster(tmp_path, voting=False)

    def broken(config: RoleConfig) -> ServerProcess:
        raise RuntimeError("no binary")

    orchestrator = _orchestrator(state, broken, io.StringIO())
    with pytest.raises(LaunchFailure) as info:
        orchestrator.launch_all()
    first = state.nodes[0]
    assert info.value.role == first.role.value
    assert orchestrator.instance(first.identifier).state is InstanceState.STOPPED
    assert orchestrator.instance(state.nodes[1].identifier).state is InstanceState.CONFIGURED
    orchestrator.shutdown()


def test_invalid_config_is_rejected_before_launch(tmp_path: Path) -> None:
    state = _cluster(tmp_path, voting=False)
    recorder = Recorder()
    orchestrator = _orchestrator(state, recorder, io.StringIO())
    state.nodes[0].logging.level = "CHATTY"
    with pytest.raises(ConfigInvalid):
        orchestrator.launch(state.nodes[0])
    assert recorder.order == []
    assert orchestrator.instance(state.nodes[0].identifier).state is InstanceState.CONFIGURED
    orchestrator.shutdown()


class SilentServer(ServerProcess):
    def __init__(self, config: RoleConfig) -> None:
        self.done = threading.Event()

    def shutdown(self) -> None:
        self.done.set()

    def wait(self) -> None:
        self.done.wait()


def test_check_raises_tail_failure(tmp_path: Path) -> None:
    state = _cluster(tmp_path, voting=False)
    orchestrator = _orchestrator(state, SilentServer, io.StringIO())
    orchestrator.settings.tail_open_timeout = 0.05
    orchestrator.launch(state.nodes[0])
    orchestrator.tailers[0].join(timeout=5)
    with pytest.raises(TailFailure):
        orchestrator.check()
    orchestrator.shutdown()


class StuckServer(FakeServer):
    def wait(self) -> None:
        super().wait()
        raise RuntimeError("wait failed")


def test_tailers_drained_even_when_wait_fails(tmp_path: Path) -> None:
    state = _cluster(tmp_path, voting=False)
    out = io.StringIO()
    orchestrator = _orchestrator(state, StuckServer, out)
    orchestrator.launch(state.nodes[0])
    with pytest.raises(RuntimeError):
        orchestrator.shutdown()
    assert all(not t.is_alive() for t in orchestrator.tailers)
    name = state.nodes[0].identifier
    assert out.getvalue().splitlines()[-1] == f"{name} {name} Shutdown complete"


def test_provisioning_and_mail_proxy_events(short_dir: Path, fake_provider_socket) -> None:
    state = _cluster(short_dir, voting=False, users=["alice"])
    provider = state.providers[0]
    fake = fake_provider_socket(provider.management_socket)
    metrics = ClusterMetrics()
    recorder = Recorder(server_cls=FakeMailProxy)
    orchestrator = _orchestrator(state, recorder, io.StringIO(), metrics=metrics)

    with pytest.raises(ProvisioningFailure):
        orchestrator.provision_accounts(retries=0)

    orchestrator.launch_all()
    orchestrator.provision_accounts(retries=2, backoff=0.01)
    account = state.mail_proxies[0].accounts[0]
    assert fake.users == {"alice": account.link_key.public_key.hex()}
    assert fake.identities == {"alice": account.link_key.public_key.hex()}
    assert fake.commands == ["ADD_USER", "SET_USER_IDENTITY", "QUIT"]

    orchestrator.launch_mail_proxies()
    proxy = orchestrator.instance(state.mail_proxies[0].identifier)
    assert proxy.state is InstanceState.RUNNING
    proxy.event_thread.join(timeout=5)
    orchestrator.shutdown()

    registry = metrics.registry
    assert registry.get_sample_value(
        "mixnet_cluster_provisioned_users_total", {"provider": provider.identifier}
    ) == 1.0
    assert registry.get_sample_value(
        "mixnet_cluster_instances", {"role": "mail_proxy", "state": "stopped"}
    ) == 1.0
    assert registry.get_sample_value(
        "mixnet_cluster_log_lines_total", {"instance": provider.identifier}
    ) == LINES_BEFORE_SHUTDOWN + 2


def test_provisioning_gives_up_when_socket_never_appears(short_dir: Path) -> None:
    state = _cluster(short_dir, voting=False, users=["alice"])
    orchestrator = _orchestrator(state, Recorder(), io.StringIO())
    orchestrator.launch_all()
    with pytest.raises(ProvisioningFailure, match="never became available"):
        orchestrator.provision_accounts(retries=1, backoff=0.01)
    orchestrator.shutdown()
