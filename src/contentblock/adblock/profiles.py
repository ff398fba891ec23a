"""
Profile store for configured filter lists.

Profiles are immutable records; every change replaces the record and, when
the set of enabled matchers changes, the compiled snapshot. Readers take the
current snapshot reference without locking.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum

from ..config import ProfileConfig
from .compiler import CompiledMatcher
from .parser import Diagnostic, FilterRule, ParsedFilterList

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL_DAYS = 4

CompiledSnapshot = tuple[tuple[str, CompiledMatcher], ...]


class ProfileEvent(Enum):
    ADDED = "added"
    REMOVED = "removed"
    ENABLED = "enabled"
    DISABLED = "disabled"
    UPDATED = "updated"


ProfileListener = Callable[[ProfileEvent, str], None]


@dataclass(frozen=True)
class Profile:
    """A filter list profile and its compiled state."""

    profile_id: str
    source: str
    title: str = ""
    update_interval: int | None = None  # days, 0 = never, None = list's Expires
    enabled: bool = True

    last_update: float | None = None
    last_attempt: float | None = None
    checksum: str | None = None
    expected_checksum: str | None = None  # published value for lists without one
    homepage: str | None = None
    expires_days: int | None = None

    # User-visible error surface
    status: str = ""
    status_time: float | None = None

    rules: tuple[FilterRule, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()
    matcher: CompiledMatcher = field(default_factory=CompiledMatcher.empty)

    @classmethod
    def from_config(cls, config: ProfileConfig) -> Profile:
        return cls(
            profile_id=config.profile_id,
            source=config.source,
            title=config.title,
            update_interval=config.update_interval,
            enabled=config.enabled,
            expected_checksum=config.checksum,
        )

    @property
    def effective_interval(self) -> int:
        """Update interval in days; 0 disables auto-update."""
        if self.update_interval is not None:
            return self.update_interval
        if self.expires_days:
            return self.expires_days
        return DEFAULT_UPDATE_INTERVAL_DAYS


@dataclass(frozen=True)
class ProfileUpdate:
    """New rules and metadata applied together with a compiled matcher."""

    rules: tuple[FilterRule, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()
    title: str | None = None
    homepage: str | None = None
    expires_days: int | None = None
    checksum: str | None = None
    last_update: float | None = None

    @classmethod
    def from_parsed(
        cls,
        parsed: ParsedFilterList,
        checksum: str | None = None,
        last_update: float | None = None,
    ) -> ProfileUpdate:
        return cls(
            rules=tuple(parsed.rules),
            diagnostics=tuple(parsed.diagnostics),
            title=parsed.metadata.title,
            homepage=parsed.metadata.homepage,
            expires_days=parsed.metadata.expires_days,
            checksum=checksum or parsed.metadata.checksum,
            last_update=last_update,
        )


class ProfileStore:
    """Owns all configured profiles."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._profiles: dict[str, Profile] = {}
        self._snapshot: CompiledSnapshot = ()
        self._listeners: list[ProfileListener] = []

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, profile_id: object) -> bool:
        return profile_id in self._profiles

    def get(self, profile_id: str) -> Profile | None:
        return self._profiles.get(profile_id)

    def profiles(self) -> list[Profile]:
        """All profiles in configuration order."""
        return list(self._profiles.values())

    def get_compiled_snapshot(self) -> CompiledSnapshot:
        """Point-in-time compiled matchers of all enabled profiles."""
        return self._snapshot

    def subscribe(self, listener: ProfileListener) -> Callable[[], None]:
        """Register a listener for profile events. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def add_profile(self, profile: Profile) -> Profile:
        if not profile.profile_id:
            raise ValueError("profile id must not be empty")

        with self._lock:
            if profile.profile_id in self._profiles:
                raise ValueError(f"profile already exists: {profile.profile_id}")
            self._profiles[profile.profile_id] = profile
            self._rebuild_snapshot()

        logger.debug("Added profile %s (%s)", profile.profile_id, profile.source)
        self._notify(ProfileEvent.ADDED, profile.profile_id)
        return profile

    def remove_profile(self, profile_id: str) -> Profile | None:
        with self._lock:
            profile = self._profiles.pop(profile_id, None)
            if profile is None:
                return None
            self._rebuild_snapshot()

        logger.debug("Removed profile %s", profile_id)
        self._notify(ProfileEvent.REMOVED, profile_id)
        return profile

    def set_enabled(self, profile_id: str, enabled: bool) -> None:
        with self._lock:
            profile = self._require(profile_id)
            if profile.enabled == enabled:
                return
            self._profiles[profile_id] = replace(profile, enabled=enabled)
            self._rebuild_snapshot()

        self._notify(ProfileEvent.ENABLED if enabled else ProfileEvent.DISABLED, profile_id)

    def replace_compiled(
        self,
        profile_id: str,
        matcher: CompiledMatcher,
        update: ProfileUpdate | None = None,
    ) -> bool:
        """Atomically swap a profile's matcher and metadata.

        Returns False if the profile no longer exists.
        """
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is None:
                return False

            changes: dict[str, object] = {"matcher": matcher}
            if update is not None:
                changes.update(
                    rules=update.rules,
                    diagnostics=update.diagnostics,
                    checksum=update.checksum,
                    homepage=update.homepage or profile.homepage,
                    expires_days=update.expires_days,
                )
                if update.title and not profile.title:
                    changes["title"] = update.title
                if update.last_update is not None:
                    changes["last_update"] = update.last_update

            self._profiles[profile_id] = replace(profile, **changes)  # type: ignore[arg-type]
            self._rebuild_snapshot()

        self._notify(ProfileEvent.UPDATED, profile_id)
        return True

    def record_status(self, profile_id: str, status: str, when: float | None = None) -> None:
        """Record a user-visible status message (e.g. the last error)."""
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is None:
                return
            self._profiles[profile_id] = replace(
                profile, status=status, status_time=when if when is not None else time.time()
            )

    def record_attempt(self, profile_id: str, when: float) -> None:
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is not None:
                self._profiles[profile_id] = replace(profile, last_attempt=when)

    def _require(self, profile_id: str) -> Profile:
        profile = self._profiles.get(profile_id)
        if profile is None:
            raise KeyError(profile_id)
        return profile

    def _rebuild_snapshot(self) -> None:
        # Caller holds self._lock
        self._snapshot = tuple(
            (p.profile_id, p.matcher) for p in self._profiles.values() if p.enabled
        )

    def _notify(self, event: ProfileEvent, profile_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, profile_id)
            except Exception as e:
                logger.warning("Profile listener failed for %s %s: %s", event.value, profile_id, e)
