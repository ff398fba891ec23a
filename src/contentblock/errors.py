"""
Error types for content blocking.

Every error here is local to one profile: callers log it, record it as the
profile status and keep the previously compiled rules.
"""


class ContentBlockError(Exception):
    """Base class for content blocking errors."""

    pass


class ParseError(ContentBlockError):
    pass


class InvalidHeaderError(ParseError):
    """Filter list does not start with a recognized header marker."""

    pass


class MalformedLineError(ParseError):
    """A single filter line could not be parsed."""

    def __init__(self, line: str, reason: str, line_number: int = 0) -> None:
        super().__init__(f"line {line_number}: {reason}: {line!r}")
        self.line = line
        self.reason = reason
        self.line_number = line_number


class FetchError(ContentBlockError):
    pass


class FetchTransportError(FetchError):
    pass


class FetchTimeoutError(FetchError):
    pass


class IntegrityError(ContentBlockError):
    pass


class ChecksumMismatchError(IntegrityError):
    """Fetched list content does not match its declared checksum."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"checksum mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ConfigError(ContentBlockError):
    pass


class InvalidUpdateUrlError(ConfigError):
    """Profile source is empty or uses an unsupported scheme."""

    pass
