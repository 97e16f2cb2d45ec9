from .documents import (
    Account,
    AuthorityConfig,
    AuthorityPeer,
    LoggingConfig,
    ManagementConfig,
    MailProxyConfig,
    NodeConfig,
    NodeDescriptor,
    NonvotingPKI,
    ProviderSection,
    Role,
    RoleConfig,
    ServicePlugin,
    VotingAuthorityConfig,
    VotingParameters,
    VotingPKI,
    Whitelist,
    all_ports,
    parse_address,
)
from .settings import ClusterSettings, UserSpec, load_settings, resolve_settings_path

__all__ = [
    "Account",
    "AuthorityConfig",
    "AuthorityPeer",
    "LoggingConfig",
    "ManagementConfig",
    "MailProxyConfig",
    "NodeConfig",
    "NodeDescriptor",
    "NonvotingPKI",
    "ProviderSection",
    "Role",
    "RoleConfig",
    "ServicePlugin",
    "VotingAuthorityConfig",
    "VotingParameters",
    "VotingPKI",
    "Whitelist",
    "all_ports",
    "parse_address",
    "ClusterSettings",
    "UserSpec",
    "load_settings",
    "resolve_settings_path",
]
