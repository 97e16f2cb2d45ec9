from .builder import (
    AuthorityMode,
    ClusterBuilder,
    ClusterState,
    NodeKind,
    build_cluster,
    find_provider,
    write_manifest,
)

__all__ = [
    "AuthorityMode",
    "ClusterBuilder",
    "ClusterState",
    "NodeKind",
    "build_cluster",
    "find_provider",
    "write_manifest",
]
