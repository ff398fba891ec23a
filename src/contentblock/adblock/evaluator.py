"""
Request evaluation across all enabled profiles.

This is the entry point for the network layer. It reads the store's
current compiled snapshot once per request and never takes a lock, so
profile updates can be swapped in while requests are being evaluated.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .matcher import Decision, MatchDecision, RequestInfo, find_exception, match_request
from .parser import ResourceType
from .profiles import ProfileStore

logger = logging.getLogger(__name__)

NETWORK_SCHEMES = ("http://", "https://", "ws://", "wss://")

# Oldest page counters are dropped beyond this
MAX_TRACKED_PAGES = 512

BlockedListener = Callable[[str, int], None]


@dataclass(frozen=True)
class Evaluation:
    """Aggregated decision for one request."""

    blocked: bool
    reason: str  # disabled, not-network, user-deny, user-allow, filter, exception, no-match
    decision: MatchDecision | None = None
    profile_id: str | None = None
    rules_checked: int = 0


def _normalize_domains(domains: Iterable[str]) -> frozenset[str]:
    return frozenset(d.strip().lower().strip(".") for d in domains if d and d.strip())


def _listed(variants: Iterable[str], domains: frozenset[str]) -> bool:
    return bool(domains) and any(v in domains for v in variants)


class RequestEvaluator:
    """Decides whether requests are blocked.

    Matching reads the profile snapshot without locking. Counters and
    statistics are updated under a small lock, so evaluate() may be called
    from several threads at once.
    """

    def __init__(
        self,
        store: ProfileStore,
        enabled: bool = True,
        allow_domains: Iterable[str] = (),
        deny_domains: Iterable[str] = (),
    ) -> None:
        self._store = store
        self.enabled = enabled

        # Replaced, never mutated, so readers need no lock
        self._allow_domains = _normalize_domains(allow_domains)
        self._deny_domains = _normalize_domains(deny_domains)

        self._listeners: list[BlockedListener] = []
        self._page_blocked: OrderedDict[str, int] = OrderedDict()
        self._counter_lock = threading.Lock()

        # Statistics
        self._requests_checked = 0
        self._requests_blocked = 0
        self._requests_excepted = 0

    @property
    def allow_domains(self) -> frozenset[str]:
        return self._allow_domains

    @property
    def deny_domains(self) -> frozenset[str]:
        return self._deny_domains

    def allow_site(self, domain: str) -> None:
        """Always accept requests to or from a domain."""
        domain = domain.strip().lower()
        self._deny_domains = self._deny_domains - {domain}
        self._allow_domains = self._allow_domains | {domain}

    def deny_site(self, domain: str) -> None:
        """Always reject requests to a domain."""
        domain = domain.strip().lower()
        self._allow_domains = self._allow_domains - {domain}
        self._deny_domains = self._deny_domains | {domain}

    def clear_site(self, domain: str) -> None:
        domain = domain.strip().lower()
        self._allow_domains = self._allow_domains - {domain}
        self._deny_domains = self._deny_domains - {domain}

    def add_blocked_listener(self, listener: BlockedListener) -> None:
        """Register a callback receiving (page, blocked count) on every block."""
        self._listeners.append(listener)

    @property
    def tracked_pages(self) -> int:
        return len(self._page_blocked)

    def blocked_count(self, page: str) -> int:
        return self._page_blocked.get(page, 0)

    def reset_page(self, page: str) -> None:
        with self._counter_lock:
            self._page_blocked.pop(page, None)

    def should_block(
        self,
        url: str,
        document: str | None = None,
        resource_type: ResourceType | str | None = None,
    ) -> bool:
        return self.evaluate(url, document, resource_type).blocked

    def evaluate(
        self,
        url: str,
        document: str | None = None,
        resource_type: ResourceType | str | None = None,
        page: str | None = None,
    ) -> Evaluation:
        """Evaluate a request against user overrides and all enabled profiles.

        Args:
            url: The request URL.
            document: URL or hostname of the document making the request.
            resource_type: ResourceType or type name (script, image, ...).
            page: Key for blocked-request counters. Defaults to document.

        Returns:
            Evaluation with the block decision and diagnostics.
        """
        if not self.enabled:
            return Evaluation(blocked=False, reason="disabled")

        if not url.lower().startswith(NETWORK_SCHEMES):
            return Evaluation(blocked=False, reason="not-network")

        request = RequestInfo.from_url(url, document, resource_type)
        if request is None:
            return Evaluation(blocked=False, reason="not-network")

        with self._counter_lock:
            self._requests_checked += 1
        page_key = page or document or ""

        if _listed(request.hostname_variants, self._deny_domains):
            return self._blocked(page_key, Evaluation(blocked=True, reason="user-deny"))

        if _listed(request.hostname_variants, self._allow_domains) or _listed(
            request.source_variants, self._allow_domains
        ):
            return Evaluation(blocked=False, reason="user-allow")

        snapshot = self._store.get_compiled_snapshot()
        checked = 0
        excepted: tuple[str, MatchDecision] | None = None

        for profile_id, compiled in snapshot:
            decision = match_request(compiled, request)
            checked += decision.rules_checked

            if decision.decision is Decision.ALLOW:
                continue

            if decision.blocked:
                # Exceptions from any enabled profile override the block
                for _, other in snapshot:
                    if other is compiled:
                        continue
                    exception, n = find_exception(other, request)
                    checked += n
                    if exception is not None:
                        decision = MatchDecision(
                            Decision.BLOCK_EXCEPTED,
                            rule=decision.rule,
                            exception=exception,
                            rules_checked=decision.rules_checked + n,
                        )
                        break

            if decision.blocked:
                logger.debug("Blocking %s (%s)", url[:80], profile_id)
                return self._blocked(
                    page_key,
                    Evaluation(
                        blocked=True,
                        reason="filter",
                        decision=decision,
                        profile_id=profile_id,
                        rules_checked=checked,
                    ),
                )

            if excepted is None:
                excepted = (profile_id, decision)

        if excepted is not None:
            with self._counter_lock:
                self._requests_excepted += 1
            return Evaluation(
                blocked=False,
                reason="exception",
                decision=excepted[1],
                profile_id=excepted[0],
                rules_checked=checked,
            )

        return Evaluation(blocked=False, reason="no-match", rules_checked=checked)

    def _blocked(self, page: str, evaluation: Evaluation) -> Evaluation:
        with self._counter_lock:
            self._requests_blocked += 1
            count = self._page_blocked.get(page, 0) + 1
            self._page_blocked[page] = count
            self._page_blocked.move_to_end(page)
            while len(self._page_blocked) > MAX_TRACKED_PAGES:
                self._page_blocked.popitem(last=False)

        for listener in list(self._listeners):
            try:
                listener(page, count)
            except Exception as e:
                logger.debug("Blocked listener failed: %s", e)

        return evaluation

    def get_stats(self) -> dict[str, int]:
        """Get blocking statistics."""
        return {
            "requests_checked": self._requests_checked,
            "requests_blocked": self._requests_blocked,
            "requests_excepted": self._requests_excepted,
            "profiles_active": len(self._store.get_compiled_snapshot()),
        }
