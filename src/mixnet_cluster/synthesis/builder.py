"""Config synthesis for a local test cluster.

Synthesis is strictly two-phase: every ``synthesize_*`` call happens first,
then :meth:`ClusterBuilder.wire` computes the authority mesh and the node
whitelist over the complete set of configs and freezes the result into a
:class:`ClusterState`. Nothing is rolled back if a step fails half way; test
clusters are disposable.
"""

import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import yaml

from mixnet_cluster.config.documents import (
    Account,
    AnyAuthorityConfig,
    AuthorityConfig,
    LoggingConfig,
    MailProxyConfig,
    ManagementConfig,
    NodeConfig,
    NonvotingPKI,
    ProviderSection,
    RoleConfig,
    ServicePlugin,
    VotingAuthorityConfig,
    VotingPKI,
    Whitelist,
    all_ports,
)
from mixnet_cluster.config.settings import DEFAULT_BASE_PORT, ClusterSettings, check_user_name
from mixnet_cluster.crypto import LinkKey, encode_key, generate_identity, generate_link_key
from mixnet_cluster.errors import ConfigInvalid, DirectoryFailure, TopologyError
from mixnet_cluster.topology import apply_voting_mesh, build_whitelist
from mixnet_cluster.utils import get_logger

logger = get_logger("synthesis")

LOCALHOST = "127.0.0.1"
MANIFEST_FILENAME = "cluster.yml"


class AuthorityMode(str, Enum):
    SINGLE = "single"
    VOTING = "voting"


class NodeKind(str, Enum):
    PROVIDER = "provider"
    MIX = "mix"


def find_provider(nodes: Sequence[NodeConfig], name: str, role: str) -> NodeConfig:
    """Look a provider up by identifier or by its short name (``provider-0``)."""
    for cfg in nodes:
        if cfg.is_provider and name in (cfg.identifier, Path(cfg.data_dir).name):
            return cfg
    raise ConfigInvalid(f"No provider named '{name}'", role=role)


@dataclass(frozen=True)
class ClusterState:
    """Wired, immutable view of every role instance in one cluster."""

    base_dir: Path
    voting: bool
    authorities: Tuple[AnyAuthorityConfig, ...]
    nodes: Tuple[NodeConfig, ...]
    mail_proxies: Tuple[MailProxyConfig, ...]
    whitelist: Whitelist
    manifest_path: Path

    @property
    def providers(self) -> Tuple[NodeConfig, ...]:
        return tuple(n for n in self.nodes if n.is_provider)

    @property
    def mixes(self) -> Tuple[NodeConfig, ...]:
        return tuple(n for n in self.nodes if not n.is_provider)

    def all_configs(self) -> List[RoleConfig]:
        return [*self.nodes, *self.authorities, *self.mail_proxies]

    def ports(self) -> List[int]:
        return all_ports(self.all_configs())

    def find_provider(self, name: str) -> NodeConfig:
        return find_provider(self.nodes, name, role="provider")


class ClusterBuilder:
    """Owns the per-cluster counters; one builder per cluster, never shared."""

    def __init__(self, base_dir: Union[str, Path], base_port: int = DEFAULT_BASE_PORT, log_level: str = "DEBUG") -> None:
        self.base_dir = Path(base_dir).resolve()
        self.base_port = base_port
        self.log_level = log_level
        self.last_port = base_port + 1
        self.provider_idx = 0
        self.node_idx = 0
        self.authority_config: Optional[AuthorityConfig] = None
        self.voting_configs: List[VotingAuthorityConfig] = []
        self.node_configs: List[NodeConfig] = []
        self.mail_proxy_configs: List[MailProxyConfig] = []
        self.recipients: Dict[str, bytes] = {}
        self._state: Optional[ClusterState] = None

    @property
    def voting(self) -> bool:
        return bool(self.voting_configs)

    @property
    def wired(self) -> bool:
        return self._state is not None

    def _ensure_synthesis_phase(self) -> None:
        if self.wired:
            raise TopologyError("Cluster is already wired; no further instances can be synthesized")

    def _next_port(self) -> int:
        port = self.last_port
        if port > 65535:
            raise ConfigInvalid("Port range exhausted")
        self.last_port += 1
        return port

    def _logging(self, file: str = "") -> LoggingConfig:
        return LoggingConfig(file=file, level=self.log_level)

    def _make_data_dir(self, name: str, role: str, index: int) -> str:
        path = self.base_dir / name
        try:
            path.mkdir(mode=0o700)
        except OSError as exc:
            raise DirectoryFailure(f"Failed to create data directory {path}: {exc}", role=role, index=index) from exc
        return str(path)

    @staticmethod
    def _validate(cfg: RoleConfig, index: int) -> None:
        try:
            cfg.fixup_and_validate()
        except ConfigInvalid as exc:
            raise ConfigInvalid(exc.message, role=cfg.role.value, index=index) from exc

    def synthesize_authority(self, mode: Union[AuthorityMode, str], count: int = 1) -> List[AnyAuthorityConfig]:
        self._ensure_synthesis_phase()
        mode = AuthorityMode(mode)
        if self.authority_config is not None or self.voting_configs:
            raise TopologyError("Authorities have already been synthesized for this cluster")
        if mode is AuthorityMode.SINGLE:
            return [self._synthesize_single_authority()]
        if count < 1:
            raise ConfigInvalid("A voting cluster needs at least one authority", role="voting_authority")
        configs = [self._synthesize_voting_authority(i) for i in range(count)]
        self.voting_configs = configs
        logger.info(f"Synthesized {count} voting authorities")
        return list(configs)

    def _synthesize_single_authority(self) -> AuthorityConfig:
        cfg = AuthorityConfig(
            addresses=[f"{LOCALHOST}:{self.base_port}"],
            data_dir=str(self.base_dir / "authority"),
            identity=generate_identity(),
            logging=self._logging("authority.log"),
        )
        self._validate(cfg, 0)
        self._make_data_dir("authority", cfg.role.value, 0)
        self.authority_config = cfg
        logger.info(f"Synthesized single authority at {cfg.addresses[0]}")
        return cfg

    def _synthesize_voting_authority(self, index: int) -> VotingAuthorityConfig:
        name = f"authority{index}"
        cfg = VotingAuthorityConfig(
            identifier=f"authority-{index}.example.org",
            addresses=[f"{LOCALHOST}:{self._next_port()}"],
            data_dir=str(self.base_dir / name),
            identity=generate_identity(),
            logging=self._logging("katzenpost.log"),
        )
        self._validate(cfg, index)
        self._make_data_dir(name, cfg.role.value, index)
        return cfg

    def _pki_binding(self) -> Union[NonvotingPKI, VotingPKI]:
        if self.voting_configs:
            return VotingPKI(peers=tuple(cfg.as_peer() for cfg in self.voting_configs))
        if self.authority_config is not None:
            return NonvotingPKI(
                address=self.authority_config.addresses[0],
                public_key=self.authority_config.identity.public_key,
            )
        raise TopologyError("Synthesize the authority before any provider or mix")

    def synthesize_node(self, kind: Union[NodeKind, str]) -> NodeConfig:
        self._ensure_synthesis_phase()
        kind = NodeKind(kind)
        is_provider = kind is NodeKind.PROVIDER
        index = self.provider_idx if is_provider else self.node_idx
        name = f"provider-{index}" if is_provider else f"node-{index}"
        pki = self._pki_binding()

        cfg = NodeConfig(
            identifier=f"{name}.eXaMpLe.org",
            addresses=[f"{LOCALHOST}:{self._next_port()}"],
            data_dir=str(self.base_dir / name),
            is_provider=is_provider,
            identity=generate_identity(),
            pki=pki,
            logging=self._logging("katzenpost.log"),
            num_sphinx_workers=1,
        )
        if is_provider:
            cfg.management = ManagementConfig(enable=True)
            cfg.provider = ProviderSection(
                plugins=[
                    ServicePlugin(capability="loop", endpoint="+loop"),
                    ServicePlugin(capability="keyserver", endpoint="+keyserver"),
                ]
            )
        self._validate(cfg, index)
        self._make_data_dir(name, cfg.role.value, index)

        if is_provider:
            self.provider_idx += 1
        else:
            self.node_idx += 1
        self.node_configs.append(cfg)
        logger.info(f"Synthesized {kind.value} {cfg.identifier} at {cfg.addresses[0]}")
        return cfg

    def synthesize_mail_proxy(self, user: str, provider: str, link_key: Optional[LinkKey] = None) -> MailProxyConfig:
        """Synthesize a client-side mail proxy holding one account on ``provider``."""
        self._ensure_synthesis_phase()
        try:
            check_user_name(user)
        except ValueError as exc:
            raise ConfigInvalid(str(exc), role="mail_proxy") from exc
        provider_cfg = find_provider(self.node_configs, provider, role="mail_proxy")
        index = len(self.mail_proxy_configs)
        key = link_key or generate_link_key()
        name = f"mailproxy-{user}@{provider_cfg.identifier}"
        pop3 = self._next_port()
        smtp = self._next_port()
        cfg = MailProxyConfig(
            identifier=name,
            pop3_address=f"{LOCALHOST}:{pop3}",
            smtp_address=f"{LOCALHOST}:{smtp}",
            data_dir=str(self.base_dir / name),
            accounts=[Account(user=user, provider=provider_cfg.identifier, link_key=key)],
            logging=self._logging("katzenpost.log"),
        )
        self._validate(cfg, index)
        self._make_data_dir(name, cfg.role.value, index)
        self.mail_proxy_configs.append(cfg)
        self.add_recipient(cfg.accounts[0].address, key.public_key)
        logger.info(f"Synthesized mail proxy {name} (pop3={pop3}, smtp={smtp})")
        return cfg

    def add_recipient(self, address: str, public_key: bytes) -> None:
        self._ensure_synthesis_phase()
        self.recipients[address] = public_key

    def wire(self) -> ClusterState:
        """Build the mesh and whitelist over the complete config set and freeze it."""
        self._ensure_synthesis_phase()
        authorities: Tuple[AnyAuthorityConfig, ...]
        if self.voting_configs:
            apply_voting_mesh(self.voting_configs)
            authorities = tuple(self.voting_configs)
        elif self.authority_config is not None:
            authorities = (self.authority_config,)
        else:
            raise TopologyError("No authority has been synthesized")

        whitelist = build_whitelist(self.node_configs)
        for index, cfg in enumerate(authorities):
            cfg.whitelist = whitelist
            self._validate(cfg, index)
        for index, proxy in enumerate(self.mail_proxy_configs):
            proxy.recipients = dict(self.recipients)
            self._validate(proxy, index)

        state = ClusterState(
            base_dir=self.base_dir,
            voting=self.voting,
            authorities=authorities,
            nodes=tuple(self.node_configs),
            mail_proxies=tuple(self.mail_proxy_configs),
            whitelist=whitelist,
            manifest_path=self.base_dir / MANIFEST_FILENAME,
        )
        for cfg in state.all_configs():
            cfg.write()
        write_manifest(state)
        self._state = state
        logger.info(
            f"Wired cluster: {len(authorities)} authorities, {len(whitelist.providers)} providers, "
            f"{len(whitelist.mixes)} mixes, {len(state.mail_proxies)} mail proxies"
        )
        return state


def manifest_entries(configs: Sequence[RoleConfig]) -> List[Dict]:
    entries = []
    for cfg in configs:
        entry = {
            "identifier": cfg.identifier,
            "role": cfg.role.value,
            "addresses": cfg.listen_addresses(),
            "data_dir": cfg.data_dir,
            "log_file": str(cfg.log_path),
            "config": str(cfg.document_path),
        }
        identity = getattr(cfg, "identity", None)
        if identity is not None:
            entry["identity_public_key"] = encode_key(identity.public_key)
        entries.append(entry)
    return entries


def write_manifest(state: ClusterState) -> Path:
    manifest = {
        "base_dir": str(state.base_dir),
        "voting": state.voting,
        "instances": manifest_entries(state.all_configs()),
    }
    try:
        state.manifest_path.write_text(yaml.safe_dump(manifest, sort_keys=False))
    except OSError as exc:
        raise DirectoryFailure(f"Failed to write manifest {state.manifest_path}: {exc}") from exc
    return state.manifest_path


def build_cluster(settings: ClusterSettings) -> ClusterState:
    """Synthesize and wire a whole cluster as described by ``settings``."""
    if settings.base_dir:
        base_dir = Path(settings.base_dir)
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DirectoryFailure(f"Failed to create base directory {base_dir}: {exc}") from exc
    else:
        base_dir = Path(tempfile.mkdtemp(prefix="mixnet-cluster"))

    builder = ClusterBuilder(base_dir, base_port=settings.base_port, log_level=settings.log_level)
    if settings.voting:
        builder.synthesize_authority(AuthorityMode.VOTING, settings.voting_authorities)
    else:
        builder.synthesize_authority(AuthorityMode.SINGLE)
    for _ in range(settings.providers):
        builder.synthesize_node(NodeKind.PROVIDER)
    for _ in range(settings.mixes):
        builder.synthesize_node(NodeKind.MIX)
    for spec in settings.users:
        builder.synthesize_mail_proxy(spec.user, spec.provider)
    return builder.wire()
