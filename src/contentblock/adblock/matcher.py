"""
URL matching against compiled network filters.

A request is normalized once into a RequestInfo (hostname variants, URL
tokens, document domain, third-party flag) and then looked up in the
bucket indexes of each compiled profile.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

import tldextract

from .compiler import TOKEN_RE, CompiledFilter, CompiledMatcher
from .parser import NetworkFilter, ResourceType, resource_type_from_name

logger = logging.getLogger(__name__)

# Bundled public suffix snapshot, no network access
_tld_extract = tldextract.TLDExtract(suffix_list_urls=None)


class Decision(Enum):
    """Outcome of matching a request against one profile."""

    ALLOW = "allow"
    BLOCK = "block"
    BLOCK_EXCEPTED = "block-excepted"


@dataclass(frozen=True)
class MatchDecision:
    """Result of URL matching."""

    decision: Decision
    rule: NetworkFilter | None = None
    exception: NetworkFilter | None = None
    rules_checked: int = 0

    @property
    def blocked(self) -> bool:
        return self.decision is Decision.BLOCK


def get_hostname_variants(hostname: str) -> tuple[str, ...]:
    """Get all variants of a hostname for matching.

    For 'sub.example.com', returns ('sub.example.com', 'example.com', 'com').
    """
    parts = hostname.split(".")
    return tuple(".".join(parts[i:]) for i in range(len(parts)))


@functools.lru_cache(maxsize=8192)
def registrable_domain(hostname: str) -> str:
    """Registrable domain (eTLD+1) of a hostname, or the hostname itself."""
    ext = _tld_extract(hostname)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return hostname


def is_third_party(url_hostname: str, source_hostname: str | None) -> bool:
    """Check if a request is third-party."""
    if not source_hostname:
        return False
    return registrable_domain(url_hostname) != registrable_domain(source_hostname)


def hostname_of(value: str | None) -> str | None:
    """Hostname of a URL or bare domain, lower-cased without port."""
    if not value:
        return None
    if "://" in value:
        try:
            hostname = urlsplit(value).hostname
        except ValueError:
            return None
    else:
        hostname = value.strip().lower().split("/", 1)[0].split(":", 1)[0]
    return hostname.strip(".") if hostname else None


@dataclass(frozen=True)
class RequestInfo:
    """A request normalized for matching."""

    url: str
    hostname: str
    hostname_variants: tuple[str, ...]
    tokens: frozenset[str]
    resource_type: ResourceType
    source_hostname: str | None
    source_variants: tuple[str, ...]
    third_party: bool

    @classmethod
    def from_url(
        cls,
        url: str,
        document: str | None = None,
        resource_type: ResourceType | str | None = None,
    ) -> RequestInfo | None:
        """Normalize a request. Returns None if the URL has no hostname.

        Args:
            url: The request URL.
            document: URL or hostname of the document issuing the request.
            resource_type: ResourceType or a resource type name.
        """
        try:
            parts = urlsplit(url)
            hostname = parts.hostname
        except ValueError:
            return None
        if not hostname:
            return None

        if parts.fragment:
            url = url.split("#", 1)[0]

        if not isinstance(resource_type, ResourceType):
            resource_type = resource_type_from_name(resource_type)

        source_hostname = hostname_of(document)
        return cls(
            url=url,
            hostname=hostname,
            hostname_variants=get_hostname_variants(hostname),
            tokens=frozenset(TOKEN_RE.findall(url.lower())),
            resource_type=resource_type,
            source_hostname=source_hostname,
            source_variants=get_hostname_variants(source_hostname) if source_hostname else (),
            third_party=is_third_party(hostname, source_hostname),
        )


def _domain_matches(
    source_hostname: str | None, included: frozenset[str], excluded: frozenset[str]
) -> bool:
    """Check if the document hostname satisfies domain constraints."""
    # If no domain constraints, matches all
    if not included and not excluded:
        return True

    # Restricted rules never apply to requests without a known document
    if not source_hostname:
        return not included

    hostname_variants = get_hostname_variants(source_hostname)

    # Check exclusions first
    if any(variant in excluded for variant in hostname_variants):
        return False

    if not included:
        return True

    return any(variant in included for variant in hostname_variants)


def _filter_matches(candidate: CompiledFilter, request: RequestInfo) -> bool:
    """Check if a filter matches the request."""
    f = candidate.filter

    # Check third-party constraint
    if f.third_party is not None and f.third_party != request.third_party:
        return False

    # Check request type constraints
    if not request.resource_type & candidate.type_mask:
        return False

    # Check domain constraints
    if not _domain_matches(request.source_hostname, f.domains, f.excluded_domains):
        return False

    # Check URL pattern
    return candidate.regex.search(request.url) is not None


def _find(
    index_candidates: Iterable[CompiledFilter], request: RequestInfo
) -> tuple[NetworkFilter | None, int]:
    """First matching filter and the number of candidates checked."""
    checked = 0
    for candidate in index_candidates:
        checked += 1
        if _filter_matches(candidate, request):
            return candidate.filter, checked
    return None, checked


def match_request(compiled: CompiledMatcher, request: RequestInfo) -> MatchDecision:
    """Decide whether a request is blocked by one compiled profile.

    Exceptions are only consulted once a block rule has matched. Any
    matching block rule counts, and any matching exception overrides it.
    """
    blocking, checked = _find(
        compiled.blocks.candidates(
            request.hostname_variants, request.tokens, request.source_variants
        ),
        request,
    )
    if blocking is None:
        return MatchDecision(Decision.ALLOW, rules_checked=checked)

    exception, exception_checked = _find(
        compiled.exceptions.candidates(
            request.hostname_variants, request.tokens, request.source_variants
        ),
        request,
    )
    checked += exception_checked

    if exception is not None:
        logger.debug("Exception %s overrides %s for %s", exception.raw, blocking.raw, request.url[:80])
        return MatchDecision(
            Decision.BLOCK_EXCEPTED, rule=blocking, exception=exception, rules_checked=checked
        )

    return MatchDecision(Decision.BLOCK, rule=blocking, rules_checked=checked)


def find_exception(
    compiled: CompiledMatcher, request: RequestInfo
) -> tuple[NetworkFilter | None, int]:
    """Look up an exception rule only, for blocks decided by another profile."""
    return _find(
        compiled.exceptions.candidates(
            request.hostname_variants, request.tokens, request.source_variants
        ),
        request,
    )
