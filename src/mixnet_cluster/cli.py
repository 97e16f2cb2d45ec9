"""
Synthesize and run a local mixnet test cluster.

Usage:
    mixnet-cluster --providers 2 --mixes 3
    mixnet-cluster --voting --authorities 3 --user alice@provider-0
    mixnet-cluster --config cluster.yml --generate-only
"""

import argparse
import signal
import sys
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from mixnet_cluster.config import ClusterSettings, UserSpec, load_settings
from mixnet_cluster.errors import ClusterError
from mixnet_cluster.orchestrator import ClusterOrchestrator, LogSink
from mixnet_cluster.synthesis import build_cluster
from mixnet_cluster.utils import ClusterMetrics, configure_logging, get_logger

logger = get_logger("cli")

CLUSTER_LOG_FILE = "cluster.log"
CHECK_INTERVAL = 1.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate and run a local mixnet test cluster.")
    parser.add_argument("--config", type=Path, help="Settings file (JSON or YAML)")
    parser.add_argument("--base-dir", type=str, help="Cluster root directory (default: fresh temp dir)")
    parser.add_argument("--base-port", type=int, help="Authority port; other ports follow it (default: 30000)")
    parser.add_argument("--voting", action="store_true", default=None, help="Run a voting authority quorum")
    parser.add_argument("--authorities", type=int, dest="voting_authorities", help="Voting authority count")
    parser.add_argument("--providers", type=int, help="Number of providers")
    parser.add_argument("--mixes", type=int, help="Number of mixes")
    parser.add_argument(
        "--user",
        action="append",
        dest="users",
        metavar="USER@PROVIDER",
        help="Create a mail proxy account (repeatable), e.g. alice@provider-0",
    )
    parser.add_argument("--node-log-level", type=str, help="Log level written into role configs")
    parser.add_argument("--generate-only", "-g", action="store_true", help="Only write configs, don't launch")
    parser.add_argument("--log-level", type=str, help="Orchestrator log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit orchestrator logs as JSON")
    parser.add_argument("--metrics-port", type=int, help="Serve Prometheus metrics on this port")
    return parser


def resolve_settings(args: argparse.Namespace) -> ClusterSettings:
    settings, _ = load_settings(args.config)
    users = [UserSpec.parse(u) for u in args.users] if args.users else None
    settings = settings.with_overrides(
        base_dir=args.base_dir,
        base_port=args.base_port,
        voting=args.voting,
        voting_authorities=args.voting_authorities,
        providers=args.providers,
        mixes=args.mixes,
        log_level=args.node_log_level.upper() if args.node_log_level else None,
        users=users,
    )
    if not settings.base_dir:
        settings = settings.with_overrides(base_dir=tempfile.mkdtemp(prefix="mixnet-cluster"))
    return settings


def run(
    settings: ClusterSettings,
    generate_only: bool = False,
    metrics_port: Optional[int] = None,
    stop_event: Optional[threading.Event] = None,
) -> int:
    state = build_cluster(settings)
    print(f"Generated {len(state.all_configs())} role configs in {state.base_dir}")
    print(f"Manifest: {state.manifest_path}")
    if generate_only:
        return 0

    stop = stop_event or threading.Event()
    sink = LogSink.to_file(state.base_dir / CLUSTER_LOG_FILE)
    metrics = ClusterMetrics()
    if metrics_port:
        metrics.start_server(metrics_port)
    orchestrator = ClusterOrchestrator(state, sink, settings=settings, metrics=metrics)
    status = 0
    try:
        orchestrator.launch_all()
        if state.mail_proxies:
            orchestrator.provision_accounts()
            orchestrator.launch_mail_proxies()
        logger.info("Cluster is up; interrupt to stop")
        while not stop.wait(CHECK_INTERVAL):
            orchestrator.check()
        orchestrator.check()
    except ClusterError as exc:
        logger.error(f"Fatal: {exc}")
        status = 1
    finally:
        orchestrator.shutdown()
        sink.close()
    return status


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = resolve_settings(args)
    except ValueError as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        return 2

    base_dir = Path(settings.base_dir)
    try:
        base_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"Failed to create base directory {base_dir}: {exc}", file=sys.stderr)
        return 1
    configure_logging(level=args.log_level, json_output=args.json_logs, log_file=str(base_dir / "orchestrator.log"))

    stop = threading.Event()
    if not args.generate_only:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda _signum, _frame: stop.set())

    try:
        return run(settings, generate_only=args.generate_only, metrics_port=args.metrics_port, stop_event=stop)
    except ClusterError as exc:
        logger.error(f"Fatal: {exc}")
        print(f"Cluster synthesis failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
