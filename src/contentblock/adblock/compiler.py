"""
Compiles parsed network filters into an immutable, indexed structure.

Each filter is placed in the first index tier that applies:
1. Hostname hash map for ||domain.com^ rules (O(1) per hostname variant)
2. Token index keyed by the longest literal token of the pattern
3. Restricting-domain index for rules limited with $domain=
4. Generic list, scanned for every request
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from .parser import (
    FilterRule,
    NetworkFilter,
    ParsedFilterList,
    ResourceType,
    parse_filter_list,
    pattern_to_regex,
)

logger = logging.getLogger(__name__)

# Applied to lower-cased text
TOKEN_RE = re.compile(r"[a-z0-9%]+")

MIN_TOKEN_LENGTH = 2

# Tokens present in most URLs make poor index keys
_BAD_TOKENS = frozenset({"http", "https", "www", "com", "net", "org", "js", "html", "php"})


@dataclass(frozen=True)
class CompiledFilter:
    """A network filter with its pre-compiled pattern."""

    filter: NetworkFilter
    regex: re.Pattern[str]
    type_mask: ResourceType


@dataclass(frozen=True)
class FilterIndex:
    """Read-only buckets of compiled filters."""

    by_hostname: dict[str, tuple[CompiledFilter, ...]] = field(default_factory=dict)
    by_token: dict[str, tuple[CompiledFilter, ...]] = field(default_factory=dict)
    by_domain: dict[str, tuple[CompiledFilter, ...]] = field(default_factory=dict)
    generic: tuple[CompiledFilter, ...] = ()

    def candidates(
        self,
        hostname_variants: Iterable[str],
        tokens: Iterable[str],
        source_variants: Iterable[str],
    ) -> Iterator[CompiledFilter]:
        """Yield filters whose bucket key occurs in the request."""
        for variant in hostname_variants:
            yield from self.by_hostname.get(variant, ())
        for token in tokens:
            yield from self.by_token.get(token, ())
        for variant in source_variants:
            yield from self.by_domain.get(variant, ())
        yield from self.generic

    def stats(self) -> dict[str, int]:
        return {
            "hostname": sum(len(v) for v in self.by_hostname.values()),
            "token": sum(len(v) for v in self.by_token.values()),
            "domain": len({id(f) for v in self.by_domain.values() for f in v}),
            "generic": len(self.generic),
        }


@dataclass(frozen=True)
class CompiledMatcher:
    """Compiled rules of one profile. Never mutated after construction."""

    blocks: FilterIndex = field(default_factory=FilterIndex)
    exceptions: FilterIndex = field(default_factory=FilterIndex)
    rule_count: int = 0

    @classmethod
    def empty(cls) -> CompiledMatcher:
        return cls()


def best_token(f: NetworkFilter) -> str | None:
    """Pick the index token for a pattern.

    A usable token is bounded on both sides within the pattern (by a
    non-token character, ``^``, or an anchor), so it must appear as a
    whole token in any URL the pattern matches.
    """
    pattern = f.pattern.lower()
    best: str | None = None
    fallback: str | None = None

    for match in TOKEN_RE.finditer(pattern):
        token = match.group()
        start, end = match.span()
        if len(token) < MIN_TOKEN_LENGTH:
            continue

        if start == 0:
            if not (f.is_left_anchor or f.is_hostname_anchor):
                continue
        elif pattern[start - 1] == "*":
            continue

        if end == len(pattern):
            if not f.is_right_anchor:
                continue
        elif pattern[end] == "*":
            continue

        if token in _BAD_TOKENS:
            if fallback is None:
                fallback = token
        elif best is None or len(token) > len(best):
            best = token

    return best or fallback


class _IndexBuilder:
    def __init__(self) -> None:
        self._by_hostname: dict[str, list[CompiledFilter]] = {}
        self._by_token: dict[str, list[CompiledFilter]] = {}
        self._by_domain: dict[str, list[CompiledFilter]] = {}
        self._generic: list[CompiledFilter] = []

    def add(self, compiled: CompiledFilter) -> None:
        f = compiled.filter

        if f.hostname:
            self._by_hostname.setdefault(f.hostname, []).append(compiled)
            return

        token = best_token(f)
        if token:
            self._by_token.setdefault(token, []).append(compiled)
            return

        if f.domains:
            for domain in f.domains:
                self._by_domain.setdefault(domain, []).append(compiled)
            return

        self._generic.append(compiled)

    def build(self) -> FilterIndex:
        return FilterIndex(
            by_hostname={k: tuple(v) for k, v in self._by_hostname.items()},
            by_token={k: tuple(v) for k, v in self._by_token.items()},
            by_domain={k: tuple(v) for k, v in self._by_domain.items()},
            generic=tuple(self._generic),
        )


def compile_filters(rules: Iterable[FilterRule]) -> CompiledMatcher:
    """Compile network filters into a CompiledMatcher.

    Non-network rules are skipped.
    """
    blocks = _IndexBuilder()
    exceptions = _IndexBuilder()
    count = 0

    for rule in rules:
        if not isinstance(rule, NetworkFilter):
            continue
        builder = exceptions if rule.is_exception else blocks
        builder.add(
            CompiledFilter(filter=rule, regex=pattern_to_regex(rule), type_mask=rule.type_mask)
        )
        count += 1

    compiled = CompiledMatcher(blocks=blocks.build(), exceptions=exceptions.build(), rule_count=count)
    logger.debug(
        "Compiled %d filters (block index %s, exception index %s)",
        count,
        compiled.blocks.stats(),
        compiled.exceptions.stats(),
    )
    return compiled


def compile_filter_list(content: str) -> tuple[ParsedFilterList, CompiledMatcher]:
    """Parse and compile filter list text.

    Raises:
        InvalidHeaderError: If the list header marker is missing.
    """
    parsed = parse_filter_list(content)
    return parsed, compile_filters(parsed.rules)
