"""Loading of cluster-level settings (counts, ports, process commands, timeouts)."""

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

SETTINGS_ENV_VAR = "MIXNET_CLUSTER_CONFIG"
DEFAULT_BASE_PORT = 30000

# argv templates; {config} and {data_dir} are substituted per instance.
DEFAULT_COMMANDS: Dict[str, List[str]] = {
    "authority": ["katzenpost-authority", "-f", "{config}"],
    "voting_authority": ["katzenpost-voting-authority", "-f", "{config}"],
    "provider": ["katzenpost-server", "-f", "{config}"],
    "mix": ["katzenpost-server", "-f", "{config}"],
    "mail_proxy": ["katzenpost-mailproxy", "-f", "{config}"],
}


def check_user_name(user: str) -> None:
    """User names end up in a directory name and on the management wire."""
    if not user or user in (".", "..") or any(ch in "/\\@" or ch.isspace() for ch in user):
        raise ValueError(f"Invalid user name {user!r}")


@dataclass
class UserSpec:
    user: str
    provider: str

    def __post_init__(self) -> None:
        check_user_name(self.user)
        if not self.provider or any(ch in "/\\" or ch.isspace() for ch in self.provider):
            raise ValueError(f"Invalid provider name {self.provider!r}")

    @classmethod
    def parse(cls, text: str) -> "UserSpec":
        user, sep, provider = text.partition("@")
        if not sep or not user or not provider:
            raise ValueError(f"User '{text}' must be given as user@provider")
        return cls(user=user, provider=provider)


@dataclass
class ClusterSettings:
    base_dir: Optional[str] = None
    base_port: int = DEFAULT_BASE_PORT
    voting: bool = False
    voting_authorities: int = 3
    providers: int = 1
    mixes: int = 2
    log_level: str = "DEBUG"
    commands: Dict[str, List[str]] = field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_COMMANDS.items()})
    tail_poll_interval: float = 0.1
    tail_open_timeout: float = 10.0
    startup_grace: float = 0.5
    users: List[UserSpec] = field(default_factory=list)

    @classmethod
    def from_file(cls, path: Path) -> "ClusterSettings":
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as exc:
            raise ValueError(f"Cannot read settings file {path}: {exc}") from exc
        if path.suffix in (".yml", ".yaml"):
            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid settings YAML at {path}: {exc}") from exc
        else:
            try:
                data = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid settings JSON at {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {path} must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClusterSettings":
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown settings keys: {sorted(unknown)}")
        base = cls()
        kwargs: Dict[str, Any] = {}
        if data.get("base_dir") is not None:
            kwargs["base_dir"] = str(data["base_dir"])
        for key in ("base_port", "voting_authorities", "providers", "mixes"):
            if key in data:
                kwargs[key] = int(data[key])
        for key in ("tail_poll_interval", "tail_open_timeout", "startup_grace"):
            if key in data:
                kwargs[key] = float(data[key])
        if "voting" in data:
            kwargs["voting"] = bool(data["voting"])
        if "log_level" in data:
            kwargs["log_level"] = str(data["log_level"]).upper()
        if "commands" in data:
            commands = dict(base.commands)
            for role, argv in (data["commands"] or {}).items():
                if role not in DEFAULT_COMMANDS:
                    raise ValueError(f"Unknown role '{role}' in commands")
                if isinstance(argv, str):
                    argv = argv.split()
                if not argv:
                    raise ValueError(f"Command for role '{role}' cannot be empty")
                commands[role] = [str(part) for part in argv]
            kwargs["commands"] = commands
        if "users" in data:
            users = []
            for entry in data["users"] or []:
                if isinstance(entry, str):
                    users.append(UserSpec.parse(entry))
                else:
                    users.append(UserSpec(user=str(entry["user"]), provider=str(entry["provider"])))
            kwargs["users"] = users
        settings = replace(base, **kwargs)
        settings.validate()
        return settings

    def validate(self) -> None:
        # Dynamic ports run upward from base_port + 1.
        if self.base_port <= 0 or self.base_port >= 65535:
            raise ValueError("base_port must be within 1-65534")
        if self.voting and self.voting_authorities < 1:
            raise ValueError("voting_authorities must be at least 1")
        if self.providers < 1:
            raise ValueError("At least one provider is required")
        if self.mixes < 0:
            raise ValueError("mixes cannot be negative")
        for name in ("tail_poll_interval", "tail_open_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.startup_grace < 0:
            raise ValueError("startup_grace cannot be negative")
        if len({(u.user, u.provider) for u in self.users}) != len(self.users):
            raise ValueError("users must be unique")

    def with_overrides(self, **overrides: Any) -> "ClusterSettings":
        """Apply non-None overrides (e.g. from CLI flags) and re-validate."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        updated = replace(self, **changes)
        updated.validate()
        return updated


def resolve_settings_path(explicit: Optional[Path] = None) -> Optional[Path]:
    """Explicit path wins, then the environment variable, otherwise no file."""
    if explicit is not None:
        return Path(explicit).resolve()
    env_value = os.getenv(SETTINGS_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = (Path.cwd() / candidate).resolve()
        return candidate
    return None


def load_settings(explicit: Optional[Path] = None) -> Tuple[ClusterSettings, Optional[Path]]:
    """
    Load cluster settings.

    Returns:
        (settings, resolved_path) where resolved_path is None when defaults are used.

    Raises:
        ValueError: if the file is missing, malformed or fails validation.
    """
    path = resolve_settings_path(explicit)
    if path is None:
        return ClusterSettings(), None
    if not path.exists():
        raise ValueError(f"Settings file {path} does not exist")
    return ClusterSettings.from_file(path), path
