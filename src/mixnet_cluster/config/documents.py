"""Per-role configuration documents and their fixup/validation pass."""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from mixnet_cluster.crypto import KEY_SIZE, Identity, LinkKey, encode_key
from mixnet_cluster.errors import ConfigInvalid, DirectoryFailure

LOG_LEVELS = ("ERROR", "WARNING", "NOTICE", "INFO", "DEBUG")
MANAGEMENT_SOCKET = "management_sock"


class Role(str, Enum):
    AUTHORITY = "authority"
    VOTING_AUTHORITY = "voting_authority"
    PROVIDER = "provider"
    MIX = "mix"
    MAIL_PROXY = "mail_proxy"


def parse_address(address: str) -> Tuple[str, int]:
    """Split ``host:port`` and validate the port range."""
    host, sep, port_text = address.rpartition(":")
    if not sep or not host:
        raise ConfigInvalid(f"Address '{address}' must be host:port")
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ConfigInvalid(f"Address '{address}' has a non-numeric port") from exc
    if port <= 0 or port > 65535:
        raise ConfigInvalid(f"Address '{address}' port must be within 1-65535")
    return host, port


def _check_key(name: str, key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ConfigInvalid(f"{name} must be {KEY_SIZE} bytes, got {len(key)}")


@dataclass
class LoggingConfig:
    file: str = ""
    level: str = "NOTICE"
    disable: bool = False

    def fixup(self, default_file: str) -> None:
        if not self.file:
            self.file = default_file
        if Path(self.file).is_absolute():
            raise ConfigInvalid(f"Log file '{self.file}' must be relative to the data directory")
        self.level = self.level.upper()
        if self.level not in LOG_LEVELS:
            raise ConfigInvalid(f"Unknown log level '{self.level}'")

    def to_dict(self) -> Dict:
        return {"Disable": self.disable, "File": self.file, "Level": self.level}


@dataclass(frozen=True)
class AuthorityPeer:
    """A voting authority as seen by the other authorities and by nodes."""

    identity_public_key: bytes
    link_public_key: bytes
    addresses: Tuple[str, ...]

    def to_dict(self) -> Dict:
        return {
            "IdentityPublicKey": encode_key(self.identity_public_key),
            "LinkPublicKey": encode_key(self.link_public_key),
            "Addresses": list(self.addresses),
        }


@dataclass(frozen=True)
class NodeDescriptor:
    """A provider or mix that authorities admit into consensus."""

    identifier: str
    identity_public_key: bytes

    def to_dict(self) -> Dict:
        return {"Identifier": self.identifier, "IdentityKey": encode_key(self.identity_public_key)}


@dataclass(frozen=True)
class Whitelist:
    providers: Tuple[NodeDescriptor, ...] = ()
    mixes: Tuple[NodeDescriptor, ...] = ()

    def __len__(self) -> int:
        return len(self.providers) + len(self.mixes)

    def validate(self) -> None:
        seen = set()
        for desc in self.providers + self.mixes:
            _check_key(f"Whitelist key for '{desc.identifier}'", desc.identity_public_key)
            if desc.identity_public_key in seen:
                raise ConfigInvalid(f"Whitelist lists node '{desc.identifier}' more than once")
            seen.add(desc.identity_public_key)

    def to_dict(self) -> Dict:
        return {
            "Providers": [d.to_dict() for d in self.providers],
            "Mixes": [d.to_dict() for d in self.mixes],
        }


@dataclass
class VotingParameters:
    mix_lambda: float = 1
    mix_max_delay: int = 10000
    send_lambda: float = 123
    send_max_interval: int = 123456

    def validate(self) -> None:
        for name in ("mix_lambda", "mix_max_delay", "send_lambda", "send_max_interval"):
            if getattr(self, name) <= 0:
                raise ConfigInvalid(f"Voting parameter '{name}' must be positive")

    def to_dict(self) -> Dict:
        return {
            "MixLambda": self.mix_lambda,
            "MixMaxDelay": self.mix_max_delay,
            "SendLambda": self.send_lambda,
            "SendMaxInterval": self.send_max_interval,
        }


@dataclass
class ManagementConfig:
    enable: bool = False
    path: str = ""

    def fixup(self, data_dir: str) -> None:
        if self.enable and not self.path:
            self.path = str(Path(data_dir) / MANAGEMENT_SOCKET)

    def to_dict(self) -> Dict:
        return {"Enable": self.enable, "Path": self.path}


@dataclass
class ServicePlugin:
    """A built-in provider service reachable at a recipient-style endpoint."""

    capability: str
    endpoint: str
    disable: bool = False

    def to_dict(self) -> Dict:
        return {"Capability": self.capability, "Endpoint": self.endpoint, "Disable": self.disable}


@dataclass
class ProviderSection:
    plugins: List[ServicePlugin] = field(default_factory=list)

    def validate(self) -> None:
        endpoints = [p.endpoint for p in self.plugins]
        if len(set(endpoints)) != len(endpoints):
            raise ConfigInvalid("Provider service plugin endpoints must be unique")
        for plugin in self.plugins:
            if not plugin.capability or not plugin.endpoint:
                raise ConfigInvalid("Provider service plugins need a capability and an endpoint")

    def to_dict(self) -> Dict:
        return {"Kaetzchen": [p.to_dict() for p in self.plugins]}


@dataclass
class NonvotingPKI:
    address: str
    public_key: bytes

    def to_dict(self) -> Dict:
        return {"Nonvoting": {"Address": self.address, "PublicKey": encode_key(self.public_key)}}


@dataclass
class VotingPKI:
    peers: Tuple[AuthorityPeer, ...] = ()

    def to_dict(self) -> Dict:
        return {"Voting": {"Peers": [p.to_dict() for p in self.peers]}}


PKIConfig = Union[NonvotingPKI, VotingPKI]


class RoleConfig:
    """Behaviour shared by every role's config document."""

    role: Role
    identifier: str
    data_dir: str
    logging: LoggingConfig
    default_log_file = "katzenpost.log"

    @property
    def log_path(self) -> Path:
        return Path(self.data_dir) / self.logging.file

    @property
    def document_path(self) -> Path:
        return Path(self.data_dir) / f"{self.role.value}.json"

    def ports(self) -> List[int]:
        return [parse_address(addr)[1] for addr in self.listen_addresses()]

    def listen_addresses(self) -> List[str]:
        raise NotImplementedError

    def to_dict(self) -> Dict:
        raise NotImplementedError

    def fixup_and_validate(self) -> None:
        """Fill derived defaults, then reject structurally invalid documents."""
        if not self.identifier:
            raise ConfigInvalid("Identifier must be set", role=self.role.value)
        if not self.data_dir or not Path(self.data_dir).is_absolute():
            raise ConfigInvalid(f"Data directory '{self.data_dir}' must be an absolute path", role=self.role.value)
        self.logging.fixup(self.default_log_file)
        addresses = self.listen_addresses()
        if not addresses:
            raise ConfigInvalid(f"'{self.identifier}' has no addresses", role=self.role.value)
        for addr in addresses:
            parse_address(addr)
        self._validate_role()

    def _validate_role(self) -> None:
        pass

    def write(self, path: Optional[Path] = None) -> Path:
        target = Path(path) if path is not None else self.document_path
        try:
            text = json.dumps(self.to_dict(), indent=2, sort_keys=False)
            target.write_text(text + "\n")
        except (OSError, TypeError, ValueError) as exc:
            raise DirectoryFailure(f"Failed to write config document {target}: {exc}", role=self.role.value) from exc
        return target


@dataclass
class AuthorityConfig(RoleConfig):
    """Single (non-voting) authority."""

    addresses: List[str]
    data_dir: str
    identity: Identity
    identifier: str = "nonvoting"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    whitelist: Whitelist = field(default_factory=Whitelist)

    role = Role.AUTHORITY
    default_log_file = "authority.log"

    def listen_addresses(self) -> List[str]:
        return list(self.addresses)

    def _validate_role(self) -> None:
        self.whitelist.validate()

    def to_dict(self) -> Dict:
        doc = {
            "Authority": {"Addresses": list(self.addresses), "DataDir": self.data_dir},
            "Logging": self.logging.to_dict(),
            "Debug": {"IdentityKey": self.identity.private_text()},
        }
        doc.update(self.whitelist.to_dict())
        return doc


@dataclass
class VotingAuthorityConfig(RoleConfig):
    identifier: str
    addresses: List[str]
    data_dir: str
    identity: Identity
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    parameters: VotingParameters = field(default_factory=VotingParameters)
    layers: int = 3
    min_nodes_per_layer: int = 1
    generate_only: bool = False
    peers: Tuple[AuthorityPeer, ...] = ()
    whitelist: Whitelist = field(default_factory=Whitelist)

    role = Role.VOTING_AUTHORITY

    def listen_addresses(self) -> List[str]:
        return list(self.addresses)

    def as_peer(self) -> AuthorityPeer:
        """How the other authorities and every node see this authority."""
        return AuthorityPeer(
            identity_public_key=self.identity.public_key,
            link_public_key=self.identity.link_public_key,
            addresses=tuple(self.addresses),
        )

    def _validate_role(self) -> None:
        if self.layers <= 0:
            raise ConfigInvalid("Layers must be positive", role=self.role.value)
        if self.min_nodes_per_layer <= 0:
            raise ConfigInvalid("MinNodesPerLayer must be positive", role=self.role.value)
        self.parameters.validate()
        own_key = self.identity.public_key
        seen = set()
        for peer in self.peers:
            _check_key("Peer identity key", peer.identity_public_key)
            _check_key("Peer link key", peer.link_public_key)
            if peer.identity_public_key == own_key:
                raise ConfigInvalid(f"'{self.identifier}' lists itself as a peer", role=self.role.value)
            if peer.identity_public_key in seen:
                raise ConfigInvalid(f"'{self.identifier}' lists a peer twice", role=self.role.value)
            if not peer.addresses:
                raise ConfigInvalid(f"'{self.identifier}' has a peer without addresses", role=self.role.value)
            seen.add(peer.identity_public_key)
        self.whitelist.validate()

    def to_dict(self) -> Dict:
        doc = {
            "Authority": {
                "Identifier": self.identifier,
                "Addresses": list(self.addresses),
                "DataDir": self.data_dir,
            },
            "Logging": self.logging.to_dict(),
            "Parameters": self.parameters.to_dict(),
            "Debug": {
                "IdentityKey": self.identity.private_text(),
                "LinkKey": self.identity.link_key.private_text(),
                "Layers": self.layers,
                "MinNodesPerLayer": self.min_nodes_per_layer,
                "GenerateOnly": self.generate_only,
            },
            "Authorities": [p.to_dict() for p in self.peers],
        }
        doc.update(self.whitelist.to_dict())
        return doc


@dataclass
class NodeConfig(RoleConfig):
    """A provider or mix server."""

    identifier: str
    addresses: List[str]
    data_dir: str
    is_provider: bool
    identity: Identity
    pki: PKIConfig
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    num_sphinx_workers: int = 1
    management: ManagementConfig = field(default_factory=ManagementConfig)
    provider: Optional[ProviderSection] = None

    @property
    def role(self) -> Role:  # type: ignore[override]
        return Role.PROVIDER if self.is_provider else Role.MIX

    @property
    def management_socket(self) -> Path:
        return Path(self.management.path or Path(self.data_dir) / MANAGEMENT_SOCKET)

    def listen_addresses(self) -> List[str]:
        return list(self.addresses)

    def _validate_role(self) -> None:
        if self.num_sphinx_workers <= 0:
            self.num_sphinx_workers = 1
        self.management.fixup(self.data_dir)
        if self.is_provider:
            if self.provider is None:
                self.provider = ProviderSection()
            self.provider.validate()
        else:
            if self.provider is not None:
                raise ConfigInvalid(f"Mix '{self.identifier}' must not carry a Provider section", role=self.role.value)
            if self.management.enable:
                raise ConfigInvalid(f"Mix '{self.identifier}' must not enable management", role=self.role.value)
        if isinstance(self.pki, VotingPKI):
            if not self.pki.peers:
                raise ConfigInvalid(f"'{self.identifier}' has an empty voting peer list", role=self.role.value)
            for peer in self.pki.peers:
                if not peer.addresses:
                    raise ConfigInvalid(f"'{self.identifier}' has a voting peer without addresses", role=self.role.value)
        elif isinstance(self.pki, NonvotingPKI):
            parse_address(self.pki.address)
            _check_key("Nonvoting authority key", self.pki.public_key)
        else:
            raise ConfigInvalid(f"'{self.identifier}' has no PKI section", role=self.role.value)

    def to_dict(self) -> Dict:
        doc = {
            "Server": {
                "Identifier": self.identifier,
                "Addresses": list(self.addresses),
                "DataDir": self.data_dir,
                "IsProvider": self.is_provider,
            },
            "Logging": self.logging.to_dict(),
            "Debug": {
                "IdentityKey": self.identity.private_text(),
                "NumSphinxWorkers": self.num_sphinx_workers,
            },
            "PKI": self.pki.to_dict(),
            "Management": self.management.to_dict(),
        }
        if self.provider is not None:
            doc["Provider"] = self.provider.to_dict()
        return doc


@dataclass
class Account:
    user: str
    provider: str
    link_key: LinkKey

    @property
    def address(self) -> str:
        return f"{self.user}@{self.provider}"

    def to_dict(self) -> Dict:
        # One key serves as both link and identity key for the account.
        return {
            "User": self.user,
            "Provider": self.provider,
            "LinkKey": self.link_key.private_text(),
            "IdentityKey": self.link_key.private_text(),
        }


@dataclass
class MailProxyConfig(RoleConfig):
    identifier: str
    pop3_address: str
    smtp_address: str
    data_dir: str
    accounts: List[Account] = field(default_factory=list)
    recipients: Dict[str, bytes] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    management: ManagementConfig = field(default_factory=lambda: ManagementConfig(enable=True))

    role = Role.MAIL_PROXY

    def listen_addresses(self) -> List[str]:
        return [self.pop3_address, self.smtp_address]

    def _validate_role(self) -> None:
        if not self.accounts:
            raise ConfigInvalid(f"'{self.identifier}' has no accounts", role=self.role.value)
        addresses = [acc.address for acc in self.accounts]
        if len(set(addresses)) != len(addresses):
            raise ConfigInvalid(f"'{self.identifier}' has duplicate accounts", role=self.role.value)
        for addr, key in self.recipients.items():
            if "@" not in addr:
                raise ConfigInvalid(f"Recipient '{addr}' must be user@provider", role=self.role.value)
            _check_key(f"Recipient key for '{addr}'", key)
        self.management.fixup(self.data_dir)

    def to_dict(self) -> Dict:
        return {
            "Proxy": {
                "POP3Address": self.pop3_address,
                "SMTPAddress": self.smtp_address,
                "DataDir": self.data_dir,
            },
            "Logging": self.logging.to_dict(),
            "Management": self.management.to_dict(),
            "Account": [acc.to_dict() for acc in self.accounts],
            "Recipients": {addr: encode_key(key) for addr, key in sorted(self.recipients.items())},
        }


AnyAuthorityConfig = Union[AuthorityConfig, VotingAuthorityConfig]


def all_ports(configs: Iterable[RoleConfig]) -> List[int]:
    ports: List[int] = []
    for cfg in configs:
        ports.extend(cfg.ports())
    return ports
