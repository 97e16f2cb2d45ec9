from .cluster import ClusterOrchestrator, Instance, InstanceState
from .process import (
    MailProxyProcess,
    ServerFactory,
    ServerProcess,
    SubprocessServer,
    render_command,
    subprocess_factories,
)
from .tailer import LogSink, LogTailer

__all__ = [
    "ClusterOrchestrator",
    "Instance",
    "InstanceState",
    "MailProxyProcess",
    "ServerFactory",
    "ServerProcess",
    "SubprocessServer",
    "render_command",
    "subprocess_factories",
    "LogSink",
    "LogTailer",
]
