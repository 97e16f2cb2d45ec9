"""Trust wiring between synthesized role instances."""

from typing import Dict, List, Sequence

from mixnet_cluster.config.documents import (
    AuthorityPeer,
    NodeConfig,
    NodeDescriptor,
    VotingAuthorityConfig,
    Whitelist,
)
from mixnet_cluster.errors import ConfigInvalid


def build_voting_mesh(configs: Sequence[VotingAuthorityConfig]) -> Dict[bytes, List[AuthorityPeer]]:
    """
    Compute each authority's peer set: every other authority, never itself.

    The result is keyed by raw identity public key. Peer order within a list
    carries no meaning; only membership does.
    """
    peers: Dict[bytes, AuthorityPeer] = {}
    for cfg in configs:
        key = cfg.identity.public_key
        if key in peers:
            raise ConfigInvalid(f"Duplicate identity key for '{cfg.identifier}'", role=cfg.role.value)
        peers[key] = cfg.as_peer()

    mesh: Dict[bytes, List[AuthorityPeer]] = {}
    for own_key in peers:
        others = set(peers) - {own_key}
        mesh[own_key] = [peers[k] for k in peers if k in others]
    return mesh


def apply_voting_mesh(configs: Sequence[VotingAuthorityConfig]) -> None:
    mesh = build_voting_mesh(configs)
    for cfg in configs:
        cfg.peers = tuple(mesh[cfg.identity.public_key])


def build_whitelist(node_configs: Sequence[NodeConfig]) -> Whitelist:
    """Partition nodes into providers and mixes, keeping creation order."""
    providers: List[NodeDescriptor] = []
    mixes: List[NodeDescriptor] = []
    for cfg in node_configs:
        desc = NodeDescriptor(identifier=cfg.identifier, identity_public_key=cfg.identity.public_key)
        if cfg.is_provider:
            providers.append(desc)
        else:
            mixes.append(desc)
    whitelist = Whitelist(providers=tuple(providers), mixes=tuple(mixes))
    whitelist.validate()
    return whitelist
