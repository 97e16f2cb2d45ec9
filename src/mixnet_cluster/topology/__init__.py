from .mesh import apply_voting_mesh, build_voting_mesh, build_whitelist

__all__ = ["apply_voting_mesh", "build_voting_mesh", "build_whitelist"]
