"""
Background updates of filter list profiles.

Each profile moves through Idle -> Checking -> Downloading -> Validating ->
Applying | Rejected -> Idle. Fetching runs on the event loop with a timeout,
parsing and compiling run in the default executor, and the result is swapped
into the ProfileStore in one step. Failures leave the compiled state alone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from ..config import DEFAULT_CHECK_PERIOD, DEFAULT_FETCH_TIMEOUT
from ..errors import (
    ConfigError,
    FetchError,
    FetchTimeoutError,
    FetchTransportError,
    IntegrityError,
    ParseError,
)
from .checksum import verify_checksum
from .compiler import compile_filter_list
from .filter_lists import FilterListCache, fetch_source_async, validate_source
from .profiles import Profile, ProfileEvent, ProfileStore, ProfileUpdate

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

Fetcher = Callable[[str, float], Awaitable[bytes]]


class UpdateState(Enum):
    IDLE = "idle"
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    VALIDATING = "validating"
    APPLYING = "applying"
    REJECTED = "rejected"


class UpdateOutcome(Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class UpdateResult:
    """Result of one update attempt."""

    profile_id: str
    outcome: UpdateOutcome
    error: str | None = None


class UpdateScheduler:
    """Periodically updates profiles whose interval has elapsed.

    All methods except the store listener must be called from the event
    loop the scheduler was started on.
    """

    def __init__(
        self,
        store: ProfileStore,
        cache: FilterListCache | None = None,
        fetcher: Fetcher | None = None,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        check_period: float = DEFAULT_CHECK_PERIOD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._cache = cache
        self._fetcher = fetcher or fetch_source_async
        self._timeout = timeout
        self._check_period = check_period
        self._clock = clock

        self._tasks: dict[str, asyncio.Task[UpdateResult]] = {}
        self._states: dict[str, UpdateState] = {}
        self._runner: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe = store.subscribe(self._on_profile_event)

    def state(self, profile_id: str) -> UpdateState:
        return self._states.get(profile_id, UpdateState.IDLE)

    def is_updating(self, profile_id: str) -> bool:
        task = self._tasks.get(profile_id)
        return task is not None and not task.done()

    async def start(self) -> None:
        """Start the periodic due-check loop."""
        self._loop = asyncio.get_running_loop()
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight updates."""
        if self._runner is not None:
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._unsubscribe()

    async def _run(self) -> None:
        while True:
            self.check_due()
            await asyncio.sleep(self._check_period)

    def is_due(self, profile: Profile, now: float | None = None) -> bool:
        """Check whether a profile's automatic update is due."""
        if not profile.enabled:
            return False

        interval = profile.effective_interval
        if interval <= 0:
            return False

        try:
            validate_source(profile.source)
        except ConfigError:
            return False

        # Failed attempts wait a full interval too
        reference = max(profile.last_update or 0.0, profile.last_attempt or 0.0)
        if reference <= 0:
            return True

        now = self._clock() if now is None else now
        return now - reference >= interval * SECONDS_PER_DAY

    def check_due(self) -> list[str]:
        """Start updates for all due profiles. Returns their ids."""
        now = self._clock()
        started = []
        for profile in self._store.profiles():
            if self.is_updating(profile.profile_id) or not self.is_due(profile, now):
                continue
            self.request_update(profile.profile_id)
            started.append(profile.profile_id)
        return started

    def request_update(self, profile_id: str) -> asyncio.Task[UpdateResult]:
        """Start an update, or return the one already in flight."""
        task = self._tasks.get(profile_id)
        if task is not None and not task.done():
            logger.debug("Update already pending for %s", profile_id)
            return task

        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        task = asyncio.create_task(self._update(profile_id))
        self._tasks[profile_id] = task

        def _forget(done: asyncio.Task[UpdateResult]) -> None:
            if self._tasks.get(profile_id) is done:
                del self._tasks[profile_id]

        task.add_done_callback(_forget)
        return task

    async def update_now(self, profile_id: str) -> UpdateResult:
        """Manual update, bypassing the interval check."""
        task = self.request_update(profile_id)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return UpdateResult(profile_id, UpdateOutcome.CANCELLED)
            raise

    def cancel(self, profile_id: str) -> bool:
        """Cancel an in-flight update. Returns True if one was pending."""
        task = self._tasks.get(profile_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def load_cached(self, profile_id: str) -> bool:
        """Compile a profile from its cached list text, if any."""
        if self._cache is None:
            return False
        cached = self._cache.load(profile_id)
        if cached is None:
            return False

        content, meta = cached
        loop = asyncio.get_running_loop()
        try:
            parsed, matcher = await loop.run_in_executor(None, compile_filter_list, content)
        except ParseError as e:
            logger.warning("Ignoring cached list for %s: %s", profile_id, e)
            return False

        update = ProfileUpdate.from_parsed(parsed, meta.checksum, meta.last_update)
        return self._store.replace_compiled(profile_id, matcher, update)

    def _on_profile_event(self, event: ProfileEvent, profile_id: str) -> None:
        if event not in (ProfileEvent.REMOVED, ProfileEvent.DISABLED):
            return
        if event is ProfileEvent.REMOVED and self._cache is not None:
            self._cache.remove(profile_id)
        if self._loop is None or self._loop.is_closed():
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self.cancel(profile_id)
        else:
            self._loop.call_soon_threadsafe(self.cancel, profile_id)

    def _set_state(self, profile_id: str, state: UpdateState) -> None:
        logger.debug("Profile %s: %s", profile_id, state.value)
        self._states[profile_id] = state

    def _fail(self, profile_id: str, message: str, when: float) -> None:
        logger.warning("Update of %s failed: %s", profile_id, message)
        self._store.record_status(profile_id, message, when)

    async def _update(self, profile_id: str) -> UpdateResult:
        profile = self._store.get(profile_id)
        if profile is None:
            return UpdateResult(profile_id, UpdateOutcome.SKIPPED, "unknown profile")

        started = self._clock()
        try:
            self._set_state(profile_id, UpdateState.CHECKING)
            validate_source(profile.source)

            self._set_state(profile_id, UpdateState.DOWNLOADING)
            self._store.record_attempt(profile_id, started)
            try:
                data = await asyncio.wait_for(
                    self._fetcher(profile.source, self._timeout), self._timeout
                )
            except asyncio.TimeoutError as e:
                raise FetchTimeoutError(f"timed out after {self._timeout:g}s") from e
            except OSError as e:
                raise FetchTransportError(str(e)) from e

            self._set_state(profile_id, UpdateState.VALIDATING)
            try:
                content = data.decode("utf-8")
            except UnicodeDecodeError as e:
                raise IntegrityError(f"list is not valid UTF-8: {e}") from e
            checksum = verify_checksum(content, profile.expected_checksum)

            self._set_state(profile_id, UpdateState.APPLYING)
            loop = asyncio.get_running_loop()
            parsed, matcher = await loop.run_in_executor(None, compile_filter_list, content)

            current = self._store.get(profile_id)
            if current is None or not current.enabled:
                logger.info("Discarding update of %s: profile removed or disabled", profile_id)
                return UpdateResult(profile_id, UpdateOutcome.CANCELLED)

            now = self._clock()
            self._store.replace_compiled(
                profile_id, matcher, ProfileUpdate.from_parsed(parsed, checksum, now)
            )
            self._store.record_status(profile_id, f"Updated ({matcher.rule_count} rules)", now)
            if self._cache is not None:
                self._cache.save(profile_id, profile.source, content, now, checksum)

            logger.info(
                "Updated profile %s: %d network rules, %d diagnostics",
                profile_id,
                matcher.rule_count,
                len(parsed.diagnostics),
            )
            return UpdateResult(profile_id, UpdateOutcome.APPLIED)

        except ConfigError as e:
            self._fail(profile_id, f"Configuration error: {e}", started)
            return UpdateResult(profile_id, UpdateOutcome.FAILED, str(e))
        except FetchError as e:
            self._fail(profile_id, f"Download failed: {e}", started)
            return UpdateResult(profile_id, UpdateOutcome.FAILED, str(e))
        except (IntegrityError, ParseError) as e:
            self._set_state(profile_id, UpdateState.REJECTED)
            self._fail(profile_id, f"Update rejected: {e}", started)
            return UpdateResult(profile_id, UpdateOutcome.REJECTED, str(e))
        except asyncio.CancelledError:
            logger.info("Update of %s cancelled", profile_id)
            raise
        finally:
            self._states.pop(profile_id, None)
