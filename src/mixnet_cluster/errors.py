"""Error taxonomy for cluster synthesis, orchestration and provisioning."""

from __future__ import annotations

from typing import Optional


class ClusterError(Exception):
    """Base class for every failure raised by the cluster toolkit.

    Carries the role and instance index (when known) so a fatal error can be
    traced back to the instance that caused it.
    """

    def __init__(self, message: str, role: Optional[str] = None, index: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.role = role
        self.index = index

    def __str__(self) -> str:
        if self.role is None:
            return self.message
        if self.index is None:
            return f"{self.role}: {self.message}"
        return f"{self.role}[{self.index}]: {self.message}"


class CryptoFailure(ClusterError):
    """Key generation or key decoding failed."""


class ConfigInvalid(ClusterError):
    """A config document was rejected by fixup/validation."""


class DirectoryFailure(ClusterError):
    """A data directory or config file could not be created."""


class LaunchFailure(ClusterError):
    """A role instance's server process failed to start."""


class TailFailure(ClusterError):
    """A running instance's log file could not be followed."""


class ProvisioningFailure(ClusterError):
    """The management protocol sequence against a provider was aborted."""

    def __init__(self, message: str, command: Optional[str] = None, code: Optional[int] = None) -> None:
        super().__init__(message, role="provider")
        self.command = command
        self.code = code


class TopologyError(ClusterError):
    """Synthesis and wiring steps were invoked out of order."""
