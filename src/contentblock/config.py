"""
Configuration and path management for contentblock.
"""

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Default settings
DEFAULT_FETCH_TIMEOUT = 60.0
DEFAULT_CHECK_PERIOD = 3600.0  # 1 hour between due-checks


def _parse_interval(value: Any) -> int | None:
    """Parse an update interval in days. "never" disables auto-update."""
    if value is None:
        return None
    if isinstance(value, str):
        if value.strip().lower() == "never":
            return 0
        value = value.strip()
    try:
        days = int(value)
    except (TypeError, ValueError):
        return None
    return max(days, 0)


@dataclass
class ProfileConfig:
    """Configured filter list profile."""

    profile_id: str
    source: str
    title: str = ""
    update_interval: int | None = None  # days, 0 = never, None = list's Expires
    enabled: bool = True
    checksum: str | None = None  # published checksum, if the list has none

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProfileConfig":
        return cls(
            profile_id=str(data.get("id", "")),
            source=str(data.get("source", "")),
            title=data.get("title", ""),
            update_interval=_parse_interval(data.get("update_interval")),
            enabled=data.get("enabled", True),
            checksum=data.get("checksum"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.profile_id,
            "source": self.source,
            "title": self.title,
            "update_interval": self.update_interval,
            "enabled": self.enabled,
            "checksum": self.checksum,
        }


@dataclass
class BlockingConfig:
    """Main configuration."""

    enabled: bool = True
    profiles: list[ProfileConfig] = field(default_factory=list)

    # Per-site overrides
    allow_domains: list[str] = field(default_factory=list)
    deny_domains: list[str] = field(default_factory=list)

    # Updates
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    check_period: float = DEFAULT_CHECK_PERIOD

    @classmethod
    def load(cls, path: Path | None = None) -> "BlockingConfig":
        """Load configuration from file."""
        if path is None:
            path = get_config_dir() / "adblock.json"

        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        return cls(
            enabled=data.get("enabled", True),
            profiles=[
                ProfileConfig.from_dict(p)
                for p in data.get("profiles", [])
                if isinstance(p, dict)
            ],
            allow_domains=[d.lower() for d in data.get("allow_domains", [])],
            deny_domains=[d.lower() for d in data.get("deny_domains", [])],
            fetch_timeout=float(data.get("fetch_timeout", DEFAULT_FETCH_TIMEOUT)),
            check_period=float(data.get("check_period", DEFAULT_CHECK_PERIOD)),
        )

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = get_config_dir() / "adblock.json"

        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "enabled": self.enabled,
            "profiles": [p.to_dict() for p in self.profiles],
            "allow_domains": self.allow_domains,
            "deny_domains": self.deny_domains,
            "fetch_timeout": self.fetch_timeout,
            "check_period": self.check_period,
        }

        with open(path, "w") as f:
            json.dump(data, f, indent=2)


def get_config_dir() -> Path:
    """Get config directory following platform conventions."""
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

    return base / "contentblock"


def get_data_dir() -> Path:
    """Get data directory for cached filter lists."""
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / "contentblock"
