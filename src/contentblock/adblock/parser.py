"""
Filter syntax parser for Adblock Plus format.

Parses network filters, element hiding filters and header metadata from
EasyList-style filter lists. Element hiding rules are stored but never
matched here.
"""

from __future__ import annotations

import functools
import logging
import math
import operator
import re
from dataclasses import dataclass, field
from enum import Enum, Flag, auto
from typing import Union

from ..errors import InvalidHeaderError, MalformedLineError

logger = logging.getLogger(__name__)


class FilterType(Enum):
    """Type of filter rule."""

    NETWORK_BLOCK = auto()
    NETWORK_EXCEPTION = auto()
    ELEMENT_HIDING = auto()
    ELEMENT_HIDING_EXCEPTION = auto()
    METADATA = auto()


class ResourceType(Flag):
    """Types of requests for network filtering."""

    SCRIPT = auto()
    IMAGE = auto()
    STYLESHEET = auto()
    OBJECT = auto()
    XMLHTTPREQUEST = auto()
    SUBDOCUMENT = auto()
    PING = auto()
    WEBSOCKET = auto()
    FONT = auto()
    MEDIA = auto()
    DOCUMENT = auto()
    OTHER = auto()


NO_TYPES = ResourceType(0)
ALL_TYPES = functools.reduce(operator.or_, ResourceType)

# Canonical option names, in serialization order
TYPE_OPTIONS: dict[str, ResourceType] = {
    "script": ResourceType.SCRIPT,
    "image": ResourceType.IMAGE,
    "stylesheet": ResourceType.STYLESHEET,
    "object": ResourceType.OBJECT,
    "xmlhttprequest": ResourceType.XMLHTTPREQUEST,
    "subdocument": ResourceType.SUBDOCUMENT,
    "ping": ResourceType.PING,
    "websocket": ResourceType.WEBSOCKET,
    "font": ResourceType.FONT,
    "media": ResourceType.MEDIA,
    "document": ResourceType.DOCUMENT,
    "other": ResourceType.OTHER,
}

TYPE_ALIASES = {
    "xhr": ResourceType.XMLHTTPREQUEST,
}

# Only understood by uBlock Origin and AdGuard lists
EXTENDED_TYPE_ALIASES = {
    "css": ResourceType.STYLESHEET,
    "frame": ResourceType.SUBDOCUMENT,
    "doc": ResourceType.DOCUMENT,
}

# Resource type names used by callers (network layer, browser automation)
REQUEST_TYPE_MAP = {
    **TYPE_OPTIONS,
    **TYPE_ALIASES,
    "fetch": ResourceType.XMLHTTPREQUEST,
    "beacon": ResourceType.PING,
    "sub_frame": ResourceType.SUBDOCUMENT,
    "main_frame": ResourceType.DOCUMENT,
    "texttrack": ResourceType.OTHER,
    "eventsource": ResourceType.OTHER,
    "manifest": ResourceType.OTHER,
}


def resource_type_from_name(name: str | None) -> ResourceType:
    """Map a resource type name to ResourceType, defaulting to OTHER."""
    if not name:
        return ResourceType.OTHER
    return REQUEST_TYPE_MAP.get(name.lower(), ResourceType.OTHER)


METADATA_KEYS = {
    "title": "Title",
    "expires": "Expires",
    "checksum": "Checksum",
    "homepage": "Homepage",
    "version": "Version",
    "last modified": "Last modified",
}

_HEADER_RE = re.compile(
    r"^\[\s*(adblock(?:\s+plus)?|ublock(?:\s+origin)?|adguard)(?:\s+(\d+(?:\.\d+)*))?[^\]]*\]$",
    re.IGNORECASE,
)
_METADATA_RE = re.compile(
    r"^!\s*(title|expires|checksum|homepage|version|last modified)\s*:\s*(.*?)\s*$",
    re.IGNORECASE,
)
_EXPIRES_RE = re.compile(r"^(\d+)\s*(h|hours?|d|days?)?\b", re.IGNORECASE)
_ELEMENT_HIDING_RE = re.compile(r"^([^/*|@\"!]*?)#(@?[?$]?)#(.+)$")
_DOMAIN_RE = re.compile(r"^[a-z0-9*][a-z0-9.*-]*$")

# Adblock Plus separator class: anything but letters, digits, _ - . %
_SEPARATOR = r"(?:[\x00-\x24\x26-\x2C\x2F\x3A-\x40\x5B-\x5E\x60\x7B-\x7F]|$)"
_HOSTNAME_ANCHOR = r"^[\w\-]+:/+(?!/)(?:[^/?#]+\.)?"


@dataclass(frozen=True)
class ListHeader:
    """Header marker declaring the list flavor and format version."""

    flavor: str
    version: str | None = None

    @property
    def extended_syntax(self) -> bool:
        return self.flavor.lower().startswith(("ublock", "adguard"))


@dataclass(frozen=True)
class NetworkFilter:
    """Parsed network filter rule."""

    pattern: str
    is_exception: bool = False

    # Pattern matching
    is_hostname_anchor: bool = False  # ||
    is_left_anchor: bool = False  # |
    is_right_anchor: bool = False  # |

    # Complete hostname of a ||host^ rule, for index lookup
    hostname: str | None = None

    # Modifiers
    match_case: bool = False
    third_party: bool | None = None  # $third-party or $~third-party
    request_types: ResourceType = NO_TYPES
    excluded_types: ResourceType = NO_TYPES
    domains: frozenset[str] = frozenset()  # $domain=
    excluded_domains: frozenset[str] = frozenset()

    raw: str = field(default="", compare=False)
    ignored_options: tuple[str, ...] = field(default=(), compare=False)

    @property
    def filter_type(self) -> FilterType:
        return FilterType.NETWORK_EXCEPTION if self.is_exception else FilterType.NETWORK_BLOCK

    @property
    def type_mask(self) -> ResourceType:
        """Resource types this rule applies to."""
        mask = self.request_types or ALL_TYPES
        return ResourceType(mask.value & ~self.excluded_types.value)

    def options(self) -> list[str]:
        """Canonical option list, in serialization order."""
        options = [name for name, t in TYPE_OPTIONS.items() if t in self.request_types]
        options.extend(f"~{name}" for name, t in TYPE_OPTIONS.items() if t in self.excluded_types)
        if self.third_party is not None:
            options.append("third-party" if self.third_party else "~third-party")
        if self.match_case:
            options.append("match-case")
        if self.domains or self.excluded_domains:
            domains = sorted(self.domains) + [f"~{d}" for d in sorted(self.excluded_domains)]
            options.append("domain=" + "|".join(domains))
        return options

    def to_text(self) -> str:
        text = "@@" if self.is_exception else ""
        if self.is_hostname_anchor:
            text += "||"
        elif self.is_left_anchor:
            text += "|"
        text += self.pattern
        if self.is_right_anchor:
            text += "|"

        options = self.options()
        if options:
            text += "$" + ",".join(options)
        elif "$" in self.pattern:
            # Keep a literal $ from being read back as an option separator
            text += "$"
        return text


@dataclass(frozen=True)
class ElementHidingFilter:
    """Element hiding rule. Stored for the cosmetic layer, not matched."""

    selector: str
    is_exception: bool = False
    variant: str = ""  # "?" or "$" for extended syntaxes
    domains: frozenset[str] = frozenset()
    excluded_domains: frozenset[str] = frozenset()
    raw: str = field(default="", compare=False)

    @property
    def filter_type(self) -> FilterType:
        if self.is_exception:
            return FilterType.ELEMENT_HIDING_EXCEPTION
        return FilterType.ELEMENT_HIDING

    def to_text(self) -> str:
        domains = sorted(self.domains) + [f"~{d}" for d in sorted(self.excluded_domains)]
        marker = ("@" if self.is_exception else "") + self.variant
        return f"{','.join(domains)}#{marker}#{self.selector}"


@dataclass(frozen=True)
class MetadataLine:
    """Header comment carrying list metadata (``! Title: ...``)."""

    key: str
    value: str

    @property
    def filter_type(self) -> FilterType:
        return FilterType.METADATA

    def to_text(self) -> str:
        return f"! {self.key}: {self.value}"


@dataclass(frozen=True)
class Diagnostic:
    """A line that was skipped or partially understood."""

    line_number: int
    text: str
    reason: str
    severity: str = "error"


FilterRule = Union[NetworkFilter, ElementHidingFilter, MetadataLine]


@dataclass
class ListMetadata:
    """Metadata declared in the list's header block."""

    title: str | None = None
    homepage: str | None = None
    expires_days: int | None = None
    checksum: str | None = None
    version: str | None = None
    last_modified: str | None = None

    def apply(self, line: MetadataLine) -> None:
        key = line.key.lower()
        if key == "title":
            self.title = line.value
        elif key == "homepage":
            self.homepage = line.value
        elif key == "expires":
            self.expires_days = parse_expires(line.value)
        elif key == "checksum":
            self.checksum = line.value
        elif key == "version":
            self.version = line.value
        elif key == "last modified":
            self.last_modified = line.value


@dataclass
class ParsedFilterList:
    """Result of parsing a whole filter list."""

    header: ListHeader
    metadata: ListMetadata = field(default_factory=ListMetadata)
    rules: list[FilterRule] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def network_filters(self) -> list[NetworkFilter]:
        return [r for r in self.rules if isinstance(r, NetworkFilter)]

    @property
    def element_hiding_filters(self) -> list[ElementHidingFilter]:
        return [r for r in self.rules if isinstance(r, ElementHidingFilter)]


def parse_expires(value: str) -> int | None:
    """Parse an ``Expires`` value into whole days.

    "4 days" -> 4, "12 hours" -> 1. Returns None if unparsable.
    """
    match = _EXPIRES_RE.match(value.strip())
    if not match:
        return None
    amount = int(match.group(1))
    unit = (match.group(2) or "d").lower()
    if unit.startswith("h"):
        return math.ceil(amount / 24)
    return amount


def parse_header(line: str) -> ListHeader | None:
    """Parse a header marker like ``[Adblock Plus 2.0]``."""
    match = _HEADER_RE.match(line.strip())
    if not match:
        return None
    flavor = " ".join(match.group(1).split())
    return ListHeader(flavor=flavor, version=match.group(2))


def pattern_to_regex(f: NetworkFilter) -> re.Pattern[str]:
    """Convert a filter pattern to regex."""
    parts: list[str] = []
    if f.is_hostname_anchor:
        parts.append(_HOSTNAME_ANCHOR)
    elif f.is_left_anchor:
        parts.append("^")

    for c in f.pattern:
        if c == "*":
            parts.append(".*")
        elif c == "^":
            parts.append(_SEPARATOR)
        else:
            parts.append(re.escape(c))

    if f.is_right_anchor:
        parts.append("$")

    flags = 0 if f.match_case else re.IGNORECASE
    return re.compile("".join(parts), flags)


def _extract_hostname_from_pattern(pattern: str) -> str | None:
    """Extract the complete hostname from a hostname-anchored pattern.

    Returns None when the host part is only a prefix (``||ads.exam``) or
    contains wildcards.
    """
    for i, c in enumerate(pattern):
        if c in "^/:":
            hostname = pattern[:i].lower()
            if hostname and _DOMAIN_RE.match(hostname) and "*" not in hostname:
                return hostname.strip(".") or None
            return None
        if c in "*?|":
            return None
    return None


def _parse_domains(domain_str: str, sep: str = "|") -> tuple[frozenset[str], frozenset[str]]:
    """Parse domain option value.

    Returns (included_domains, excluded_domains). A domain listed both ways
    is excluded.
    """
    included: set[str] = set()
    excluded: set[str] = set()

    for domain in domain_str.split(sep):
        domain = domain.strip().lower()
        negated = domain.startswith("~")
        if negated:
            domain = domain[1:]
        if not domain or not _DOMAIN_RE.match(domain):
            continue
        if negated:
            excluded.add(domain)
        else:
            included.add(domain)

    return frozenset(included - excluded), frozenset(excluded)


def _parse_options(option_str: str, extended: bool) -> tuple[dict[str, object], list[str]]:
    """Parse filter options like $third-party,script,domain=example.com.

    Returns constructor keyword arguments and the options that were not
    understood.
    """
    kwargs: dict[str, object] = {}
    ignored: list[str] = []
    request_types = NO_TYPES
    excluded_types = NO_TYPES

    for option in option_str.split(","):
        option = option.strip()
        name = option.lower()
        if not name:
            continue

        negated = name.startswith("~")
        if negated:
            name = name[1:]

        if name.startswith("domain="):
            included, excluded = _parse_domains(option.split("=", 1)[1])
            if negated or not (included or excluded):
                ignored.append(option)
                continue
            kwargs["domains"] = included
            kwargs["excluded_domains"] = excluded
            continue

        if name == "match-case":
            kwargs["match_case"] = not negated
            continue

        if name == "third-party" or (extended and name == "3p"):
            kwargs["third_party"] = not negated
            continue

        if extended and name in ("first-party", "1p"):
            kwargs["third_party"] = negated
            continue

        req_type = TYPE_OPTIONS.get(name) or TYPE_ALIASES.get(name)
        if req_type is None and extended:
            req_type = EXTENDED_TYPE_ALIASES.get(name)
        if req_type is not None:
            if negated:
                excluded_types |= req_type
            else:
                request_types |= req_type
            continue

        ignored.append(option)

    kwargs["request_types"] = request_types
    kwargs["excluded_types"] = excluded_types
    return kwargs, ignored


def parse_network_filter(
    line: str, header: ListHeader | None = None, line_number: int = 0
) -> NetworkFilter:
    """Parse a network filter rule.

    Raises:
        MalformedLineError: If the pattern cannot be used for matching.
    """
    raw = line.strip()
    text = raw

    is_exception = text.startswith("@@")
    if is_exception:
        text = text[2:]

    option_str = ""
    modifier_pos = text.rfind("$")
    if modifier_pos != -1:
        option_str = text[modifier_pos + 1 :]
        text = text[:modifier_pos]

    is_hostname_anchor = text.startswith("||")
    if is_hostname_anchor:
        text = text[2:]

    is_left_anchor = not is_hostname_anchor and text.startswith("|")
    if is_left_anchor:
        text = text[1:]

    is_right_anchor = text.endswith("|")
    if is_right_anchor:
        text = text[:-1]

    if not text.replace("*", "").replace("^", ""):
        raise MalformedLineError(raw, "pattern matches every request", line_number)
    if len(text) > 2 and text.startswith("/") and text.endswith("/"):
        raise MalformedLineError(raw, "regular expression rules are not supported", line_number)
    if any(c.isspace() for c in text):
        raise MalformedLineError(raw, "pattern contains whitespace", line_number)

    extended = header.extended_syntax if header else False
    kwargs, ignored = _parse_options(option_str, extended) if option_str else ({}, [])

    return NetworkFilter(
        pattern=text,
        is_exception=is_exception,
        is_hostname_anchor=is_hostname_anchor,
        is_left_anchor=is_left_anchor,
        is_right_anchor=is_right_anchor,
        hostname=_extract_hostname_from_pattern(text) if is_hostname_anchor else None,
        raw=raw,
        ignored_options=tuple(ignored),
        **kwargs,  # type: ignore[arg-type]
    )


def parse_element_hiding_filter(line: str) -> ElementHidingFilter | None:
    """Parse an element hiding rule (``domain##selector``)."""
    match = _ELEMENT_HIDING_RE.match(line.strip())
    if not match:
        return None

    domain_part, marker, selector = match.groups()
    selector = selector.strip()
    if not selector:
        return None

    included, excluded = _parse_domains(domain_part, ",")
    return ElementHidingFilter(
        selector=selector,
        is_exception=marker.startswith("@"),
        variant=marker.lstrip("@"),
        domains=included,
        excluded_domains=excluded,
        raw=line.strip(),
    )


def parse_line(
    line: str, header: ListHeader | None = None, line_number: int = 0
) -> FilterRule | Diagnostic | None:
    """Parse one line of a filter list.

    Returns None for blank lines and plain comments, a Diagnostic for lines
    that cannot be used.
    """
    line = line.strip()

    if not line or line.startswith("["):
        return None

    if line.startswith("!"):
        match = _METADATA_RE.match(line)
        if match:
            return MetadataLine(key=METADATA_KEYS[match.group(1).lower()], value=match.group(2))
        return None

    if "#" in line:
        hiding = parse_element_hiding_filter(line)
        if hiding is not None:
            return hiding

    try:
        return parse_network_filter(line, header, line_number)
    except MalformedLineError as e:
        return Diagnostic(line_number=line_number, text=line, reason=e.reason)


def serialize_rule(rule: FilterRule) -> str:
    """Render a rule in its canonical text form."""
    return rule.to_text()


def parse_filter_list(content: str) -> ParsedFilterList:
    """Parse a filter list.

    Raises:
        InvalidHeaderError: If the first non-blank line is not a header marker.
    """
    lines = content.lstrip("\ufeff").splitlines()

    header: ListHeader | None = None
    start = len(lines)
    for index, line in enumerate(lines):
        if line.strip():
            header = parse_header(line)
            start = index + 1
            break

    if header is None:
        raise InvalidHeaderError("missing filter list header (e.g. [Adblock Plus 2.0])")

    result = ParsedFilterList(header=header)
    in_header_block = True

    for number, line in enumerate(lines[start:], start=start + 1):
        parsed = parse_line(line, header, number)
        if parsed is None:
            continue

        if isinstance(parsed, Diagnostic):
            result.diagnostics.append(parsed)
            continue

        if isinstance(parsed, MetadataLine):
            # Metadata only counts in the leading comment block
            if in_header_block:
                result.metadata.apply(parsed)
                result.rules.append(parsed)
            continue

        in_header_block = False
        if isinstance(parsed, NetworkFilter) and parsed.ignored_options:
            result.diagnostics.append(
                Diagnostic(
                    line_number=number,
                    text=parsed.raw,
                    reason="unknown options ignored: " + ",".join(parsed.ignored_options),
                    severity="warning",
                )
            )
        result.rules.append(parsed)

    logger.debug(
        "Parsed filter list %r: %d network, %d element hiding, %d diagnostics",
        result.metadata.title,
        len(result.network_filters),
        len(result.element_hiding_filters),
        len(result.diagnostics),
    )

    return result
