"""Unit tests for the update scheduler."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from contentblock.adblock.checksum import add_checksum
from contentblock.adblock.evaluator import RequestEvaluator
from contentblock.adblock.filter_lists import FilterListCache
from contentblock.adblock.profiles import Profile, ProfileStore
from contentblock.adblock.updater import (
    SECONDS_PER_DAY,
    UpdateOutcome,
    UpdateScheduler,
    UpdateState,
)
from contentblock.errors import FetchTransportError

SOURCE = "https://lists.example/easylist.txt"
GOOD_LIST = "[Adblock Plus 2.0]\n! Title: EasyList\n||ads.example.com^\n@@||ads.example.com/ok.js^\n"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _setup(
    fetcher,
    cache: FilterListCache | None = None,
    timeout: float = 5.0,
    **profile_kwargs,
) -> tuple[ProfileStore, UpdateScheduler, FakeClock]:
    store = ProfileStore()
    profile_kwargs.setdefault("source", SOURCE)
    store.add_profile(Profile(profile_id="easylist", **profile_kwargs))
    clock = FakeClock()
    scheduler = UpdateScheduler(store, cache=cache, fetcher=fetcher, timeout=timeout, clock=clock)
    return store, scheduler, clock


class TestUpdateNow:
    """Tests for a single update attempt."""

    @pytest.mark.asyncio
    async def test_update_applies_list(self, tmp_path: Path) -> None:
        """Test a successful update swaps in the new rules."""
        fetcher = AsyncMock(return_value=GOOD_LIST.encode())
        cache = FilterListCache(tmp_path)
        store, scheduler, clock = _setup(fetcher, cache)

        result = await scheduler.update_now("easylist")

        assert result.outcome is UpdateOutcome.APPLIED
        fetcher.assert_awaited_once_with(SOURCE, 5.0)

        profile = store.get("easylist")
        assert profile is not None
        assert profile.last_update == clock.now
        assert profile.matcher.rule_count == 2
        assert profile.title == "EasyList"
        assert profile.status == "Updated (2 rules)"
        assert profile.checksum is not None

        cached = cache.load("easylist")
        assert cached is not None
        assert cached[0] == GOOD_LIST
        assert scheduler.state("easylist") is UpdateState.IDLE

    @pytest.mark.asyncio
    async def test_checksum_mismatch_keeps_previous_rules(self) -> None:
        """A tampered list is rejected and the old matcher stays in place."""
        signed = add_checksum(GOOD_LIST)
        tampered = signed + "||evil.example^\n"
        fetcher = AsyncMock(side_effect=[signed.encode(), tampered.encode()])
        store, scheduler, clock = _setup(fetcher)

        assert (await scheduler.update_now("easylist")).outcome is UpdateOutcome.APPLIED
        before = store.get("easylist")

        clock.now += 60
        result = await scheduler.update_now("easylist")

        assert result.outcome is UpdateOutcome.REJECTED
        assert "checksum mismatch" in (result.error or "")
        after = store.get("easylist")
        assert after.matcher is before.matcher
        assert after.last_update == before.last_update
        assert after.rules == before.rules
        assert after.last_attempt == clock.now
        assert after.status.startswith("Update rejected")

    @pytest.mark.asyncio
    async def test_published_checksum_mismatch(self) -> None:
        fetcher = AsyncMock(return_value=GOOD_LIST.encode())
        store, scheduler, _ = _setup(fetcher, expected_checksum="AAAAAAAAAAAAAAAAAAAAAA")

        result = await scheduler.update_now("easylist")

        assert result.outcome is UpdateOutcome.REJECTED
        assert store.get("easylist").matcher.rule_count == 0

    @pytest.mark.asyncio
    async def test_missing_header_leaves_decisions_unchanged(self) -> None:
        fetcher = AsyncMock(side_effect=[GOOD_LIST.encode(), b"||other.example^\n"])
        store, scheduler, _ = _setup(fetcher)
        evaluator = RequestEvaluator(store)
        await scheduler.update_now("easylist")

        urls = ["http://ads.example.com/x.js", "http://ads.example.com/ok.js", "http://other.example/"]
        before = [evaluator.should_block(url) for url in urls]

        result = await scheduler.update_now("easylist")

        assert result.outcome is UpdateOutcome.REJECTED
        assert [evaluator.should_block(url) for url in urls] == before == [True, False, False]

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_rejected(self) -> None:
        fetcher = AsyncMock(return_value=b"[Adblock Plus 2.0]\n\xff\xfe\n")
        _, scheduler, _ = _setup(fetcher)
        result = await scheduler.update_now("easylist")
        assert result.outcome is UpdateOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_transport_failure(self) -> None:
        fetcher = AsyncMock(side_effect=FetchTransportError("connection refused"))
        store, scheduler, clock = _setup(fetcher)

        result = await scheduler.update_now("easylist")

        assert result.outcome is UpdateOutcome.FAILED
        assert result.error == "connection refused"
        profile = store.get("easylist")
        assert profile.last_update is None
        assert profile.last_attempt == clock.now
        assert profile.status == "Download failed: connection refused"

    @pytest.mark.asyncio
    async def test_os_error_is_transport_failure(self) -> None:
        fetcher = AsyncMock(side_effect=ConnectionResetError("reset by peer"))
        _, scheduler, _ = _setup(fetcher)
        result = await scheduler.update_now("easylist")
        assert result.outcome is UpdateOutcome.FAILED

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        async def slow(source: str, timeout: float) -> bytes:
            await asyncio.sleep(10)
            return b""

        store, scheduler, _ = _setup(slow, timeout=0.05)

        result = await scheduler.update_now("easylist")

        assert result.outcome is UpdateOutcome.FAILED
        assert "timed out" in (result.error or "")
        assert store.get("easylist").status.startswith("Download failed")

    @pytest.mark.asyncio
    async def test_invalid_source(self) -> None:
        fetcher = AsyncMock()
        store, scheduler, _ = _setup(fetcher, source="ftp://lists.example/list.txt")

        result = await scheduler.update_now("easylist")

        assert result.outcome is UpdateOutcome.FAILED
        fetcher.assert_not_awaited()
        assert store.get("easylist").status.startswith("Configuration error")

    @pytest.mark.asyncio
    async def test_malformed_source(self) -> None:
        """A URL that cannot be parsed fails the update instead of raising."""
        fetcher = AsyncMock()
        store, scheduler, _ = _setup(fetcher, source="http://[bad/list.txt")

        result = await scheduler.update_now("easylist")

        assert result.outcome is UpdateOutcome.FAILED
        fetcher.assert_not_awaited()
        assert store.get("easylist").status.startswith("Configuration error")

    @pytest.mark.asyncio
    async def test_unknown_profile(self) -> None:
        _, scheduler, _ = _setup(AsyncMock())
        result = await scheduler.update_now("missing")
        assert result.outcome is UpdateOutcome.SKIPPED


class TestCoalescingAndCancellation:
    """Tests for in-flight update handling."""

    @pytest.mark.asyncio
    async def test_requests_coalesce(self) -> None:
        release = asyncio.Event()
        calls = 0

        async def fetcher(source: str, timeout: float) -> bytes:
            nonlocal calls
            calls += 1
            await release.wait()
            return GOOD_LIST.encode()

        _, scheduler, _ = _setup(fetcher)

        first = scheduler.request_update("easylist")
        second = scheduler.request_update("easylist")
        assert first is second

        await asyncio.sleep(0)
        assert scheduler.is_updating("easylist")
        assert scheduler.state("easylist") is UpdateState.DOWNLOADING

        release.set()
        result = await first
        assert result.outcome is UpdateOutcome.APPLIED
        assert calls == 1
        assert not scheduler.is_updating("easylist")

    @pytest.mark.asyncio
    async def test_remove_cancels_update(self) -> None:
        started = asyncio.Event()

        async def fetcher(source: str, timeout: float) -> bytes:
            started.set()
            await asyncio.sleep(10)
            return GOOD_LIST.encode()

        store, scheduler, _ = _setup(fetcher)

        task = asyncio.create_task(scheduler.update_now("easylist"))
        await started.wait()
        store.remove_profile("easylist")

        result = await task
        assert result.outcome is UpdateOutcome.CANCELLED
        assert not scheduler.is_updating("easylist")

    @pytest.mark.asyncio
    async def test_disable_cancels_update_and_keeps_matcher(self) -> None:
        started = asyncio.Event()

        async def fetcher(source: str, timeout: float) -> bytes:
            started.set()
            await asyncio.sleep(10)
            return GOOD_LIST.encode()

        store, scheduler, _ = _setup(fetcher)
        matcher = store.get("easylist").matcher

        task = asyncio.create_task(scheduler.update_now("easylist"))
        await started.wait()
        store.set_enabled("easylist", False)

        assert (await task).outcome is UpdateOutcome.CANCELLED
        store.set_enabled("easylist", True)
        assert store.get_compiled_snapshot() == (("easylist", matcher),)

    @pytest.mark.asyncio
    async def test_cancel_without_update(self) -> None:
        _, scheduler, _ = _setup(AsyncMock())
        assert scheduler.cancel("easylist") is False


class TestSchedule:
    """Tests for due checks and the background loop."""

    def test_is_due(self) -> None:
        store, scheduler, clock = _setup(AsyncMock())
        now = clock.now
        profile = store.get("easylist")

        assert scheduler.is_due(profile, now)
        assert not scheduler.is_due(Profile("p", SOURCE, update_interval=0), now)
        assert not scheduler.is_due(Profile("p", SOURCE, enabled=False), now)
        assert not scheduler.is_due(Profile("p", ""), now)

        recent = Profile("p", SOURCE, last_update=now - SECONDS_PER_DAY)
        assert not scheduler.is_due(recent, now)
        stale = Profile("p", SOURCE, last_update=now - 5 * SECONDS_PER_DAY)
        assert scheduler.is_due(stale, now)
        short = Profile("p", SOURCE, last_update=now - 2 * SECONDS_PER_DAY, expires_days=1)
        assert scheduler.is_due(short, now)

    @pytest.mark.asyncio
    async def test_failed_attempt_waits_full_interval(self) -> None:
        fetcher = AsyncMock(side_effect=FetchTransportError("down"))
        store, scheduler, clock = _setup(fetcher)

        await scheduler.update_now("easylist")
        assert not scheduler.is_due(store.get("easylist"))

        clock.now += 4 * SECONDS_PER_DAY
        assert scheduler.is_due(store.get("easylist"))

    @pytest.mark.asyncio
    async def test_check_due(self) -> None:
        fetcher = AsyncMock(return_value=GOOD_LIST.encode())
        store, scheduler, clock = _setup(fetcher)
        store.add_profile(Profile("fresh", SOURCE, last_update=clock.now))
        store.add_profile(Profile("manual", SOURCE, update_interval=0))

        assert scheduler.check_due() == ["easylist"]

        result = await scheduler.request_update("easylist")
        assert result.outcome is UpdateOutcome.APPLIED
        assert fetcher.await_count == 1
        assert scheduler.check_due() == []

    @pytest.mark.asyncio
    async def test_check_due_skips_malformed_source(self) -> None:
        """One unparseable source does not stop other profiles from updating."""
        fetcher = AsyncMock(return_value=GOOD_LIST.encode())
        store, scheduler, _ = _setup(fetcher, source="http://[bad/list.txt")
        store.add_profile(Profile("good", SOURCE))

        assert scheduler.check_due() == ["good"]

        result = await scheduler.request_update("good")
        assert result.outcome is UpdateOutcome.APPLIED
        assert store.get("good").matcher.rule_count == 2

    @pytest.mark.asyncio
    async def test_start_runs_due_updates(self) -> None:
        fetcher = AsyncMock(return_value=GOOD_LIST.encode())
        store, scheduler, _ = _setup(fetcher)

        await scheduler.start()
        await asyncio.sleep(0)
        assert scheduler.is_updating("easylist")

        await scheduler.request_update("easylist")
        await scheduler.stop()

        assert fetcher.await_count == 1
        assert store.get("easylist").matcher.rule_count == 2

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_updates(self) -> None:
        async def fetcher(source: str, timeout: float) -> bytes:
            await asyncio.sleep(10)
            return GOOD_LIST.encode()

        store, scheduler, _ = _setup(fetcher)
        scheduler.request_update("easylist")
        await asyncio.sleep(0)

        await scheduler.stop()

        assert not scheduler.is_updating("easylist")
        assert store.get("easylist").last_update is None


class TestCache:
    """Tests for cache integration."""

    @pytest.mark.asyncio
    async def test_load_cached(self, tmp_path: Path) -> None:
        cache = FilterListCache(tmp_path)
        cache.save("easylist", SOURCE, GOOD_LIST, 500.0, "sum")
        store, scheduler, _ = _setup(AsyncMock(), cache)

        assert await scheduler.load_cached("easylist") is True

        profile = store.get("easylist")
        assert profile.last_update == 500.0
        assert profile.checksum == "sum"
        assert profile.matcher.rule_count == 2

    @pytest.mark.asyncio
    async def test_load_cached_rejects_bad_content(self, tmp_path: Path) -> None:
        cache = FilterListCache(tmp_path)
        cache.save("easylist", SOURCE, "||ads.example.com^\n", 500.0)
        _, scheduler, _ = _setup(AsyncMock(), cache)
        assert await scheduler.load_cached("easylist") is False

    @pytest.mark.asyncio
    async def test_load_cached_without_cache(self) -> None:
        _, scheduler, _ = _setup(AsyncMock())
        assert await scheduler.load_cached("easylist") is False

    def test_remove_drops_cached_list(self, tmp_path: Path) -> None:
        cache = FilterListCache(tmp_path)
        cache.save("easylist", SOURCE, GOOD_LIST, 500.0)
        store, _, _ = _setup(AsyncMock(), cache)

        store.remove_profile("easylist")

        assert cache.load("easylist") is None
