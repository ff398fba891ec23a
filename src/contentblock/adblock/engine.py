"""
Content blocker that wires configuration, profiles, background updates and
request evaluation together, and hooks them into Playwright pages.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import BlockingConfig, ProfileConfig
from ..errors import InvalidUpdateUrlError
from .evaluator import RequestEvaluator
from .filter_lists import FilterListCache, validate_source
from .parser import ResourceType
from .profiles import Profile, ProfileStore
from .updater import Fetcher, UpdateResult, UpdateScheduler

if TYPE_CHECKING:
    from playwright.async_api import Frame, Page, Route

logger = logging.getLogger(__name__)

# Map Playwright resource types to our ResourceType flags
PLAYWRIGHT_TYPE_MAP = {
    "document": ResourceType.DOCUMENT,
    "stylesheet": ResourceType.STYLESHEET,
    "image": ResourceType.IMAGE,
    "media": ResourceType.MEDIA,
    "font": ResourceType.FONT,
    "script": ResourceType.SCRIPT,
    "texttrack": ResourceType.OTHER,
    "xhr": ResourceType.XMLHTTPREQUEST,
    "fetch": ResourceType.XMLHTTPREQUEST,
    "eventsource": ResourceType.OTHER,
    "websocket": ResourceType.WEBSOCKET,
    "manifest": ResourceType.OTHER,
    "ping": ResourceType.PING,
    "other": ResourceType.OTHER,
}


@dataclass(frozen=True)
class ProfileInfo:
    """Profile summary for the UI layer."""

    profile_id: str
    title: str
    source: str
    enabled: bool
    update_interval: int
    last_update: float | None
    status: str
    status_time: float | None
    rule_count: int
    diagnostic_count: int
    updating: bool


class ContentBlocker:
    """Owns the profile store, update scheduler and request evaluator."""

    def __init__(
        self,
        config: BlockingConfig | None = None,
        cache: FilterListCache | None = None,
        fetcher: Fetcher | None = None,
    ) -> None:
        """Initialize the content blocker.

        Args:
            config: Blocking configuration. If None, uses defaults.
            cache: On-disk list cache. If None, uses the data directory.
            fetcher: Coroutine fetching list bytes, for tests and embedding.
        """
        self._config = config or BlockingConfig()
        self.store = ProfileStore()
        self.cache = cache or FilterListCache()
        self.scheduler = UpdateScheduler(
            self.store,
            cache=self.cache,
            fetcher=fetcher,
            timeout=self._config.fetch_timeout,
            check_period=self._config.check_period,
        )
        self.evaluator = RequestEvaluator(
            self.store,
            enabled=self._config.enabled,
            allow_domains=self._config.allow_domains,
            deny_domains=self._config.deny_domains,
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

        # Counter key last used for each page's main frame
        self._page_keys: weakref.WeakKeyDictionary[Page, str] = weakref.WeakKeyDictionary()

    async def initialize(self) -> None:
        """Add configured profiles, load cached lists and start updates."""
        async with self._init_lock:
            if self._initialized:
                return

            logger.debug("Initializing content blocker...")

            for profile_config in self._config.profiles:
                try:
                    self.add_profile(profile_config)
                except ValueError as e:
                    logger.warning("Skipping profile %r: %s", profile_config.profile_id, e)

            for profile in self.store.profiles():
                await self.scheduler.load_cached(profile.profile_id)

            await self.scheduler.start()
            self._initialized = True
            logger.info(
                "Content blocker initialized: %d profiles, %d enabled",
                len(self.store),
                len(self.store.get_compiled_snapshot()),
            )

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        self._initialized = False

    def add_profile(self, profile_config: ProfileConfig) -> Profile:
        profile = self.store.add_profile(Profile.from_config(profile_config))
        try:
            validate_source(profile.source)
        except InvalidUpdateUrlError as e:
            # Auto-update stays off until the source is corrected
            logger.warning("Profile %s: %s", profile.profile_id, e)
            self.store.record_status(profile.profile_id, f"Configuration error: {e}")
        return profile

    def remove_profile(self, profile_id: str) -> bool:
        return self.store.remove_profile(profile_id) is not None

    def set_enabled(self, profile_id: str, enabled: bool) -> None:
        self.store.set_enabled(profile_id, enabled)

    async def update_now(self, profile_id: str) -> UpdateResult:
        return await self.scheduler.update_now(profile_id)

    def list_profiles(self) -> list[ProfileInfo]:
        return [
            ProfileInfo(
                profile_id=p.profile_id,
                title=p.title,
                source=p.source,
                enabled=p.enabled,
                update_interval=p.effective_interval,
                last_update=p.last_update,
                status=p.status,
                status_time=p.status_time,
                rule_count=p.matcher.rule_count,
                diagnostic_count=len(p.diagnostics),
                updating=self.scheduler.is_updating(p.profile_id),
            )
            for p in self.store.profiles()
        ]

    async def setup_page(self, page: Page) -> None:
        """Setup request blocking for a page.

        Installs a route handler for network blocking and resets the page's
        blocked counter on main frame navigation.

        Args:
            page: The Playwright page to setup.
        """
        await self.initialize()

        async def handler(route: Route) -> None:
            await self._handle_route(route, page)

        await page.route("**/*", handler)
        page.on("framenavigated", self._on_frame_navigated)
        page.on("close", self._on_page_closed)

        logger.debug("Content blocking setup complete for page")

    async def _handle_route(self, route: Route, page: Page) -> None:
        """Block or continue one network request."""
        request = route.request
        url = request.url

        document = None
        try:
            frame = request.frame
            if frame:
                document = frame.url or None
        except Exception as e:
            # Service worker requests have no frame
            logger.debug("No frame for request %s: %s", url[:80], e)

        resource_type = PLAYWRIGHT_TYPE_MAP.get(request.resource_type, ResourceType.OTHER)
        page_key = page.main_frame.url
        self._page_keys[page] = page_key
        evaluation = self.evaluator.evaluate(url, document, resource_type, page=page_key)

        if evaluation.blocked:
            logger.debug("Blocking: %s", url[:80])
            try:
                await route.abort("blockedbyclient")
            except Exception as e:
                logger.debug("Failed to abort: %s", e)
            return

        try:
            await route.continue_()
        except Exception as e:
            # Route may already be handled
            logger.debug("Failed to continue route: %s", e)

    def _on_frame_navigated(self, frame: Frame) -> None:
        if frame.parent_frame is not None:
            return
        previous = self._page_keys.pop(frame.page, None)
        if previous is not None:
            self.evaluator.reset_page(previous)
        self.evaluator.reset_page(frame.url)

    def _on_page_closed(self, page: Page) -> None:
        previous = self._page_keys.pop(page, None)
        if previous is not None:
            self.evaluator.reset_page(previous)
