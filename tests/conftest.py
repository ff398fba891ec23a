"""Shared fixtures for content blocking tests."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from contentblock.adblock.checksum import add_checksum


def build_list(
    *rules: str,
    title: str = "Test List",
    expires: str | None = None,
    header: str = "[Adblock Plus 2.0]",
    checksum: bool = False,
) -> str:
    """Build filter list text with a header block."""
    lines = [header, f"! Title: {title}"]
    if expires:
        lines.append(f"! Expires: {expires}")
    lines.extend(rules)
    text = "\n".join(lines) + "\n"
    return add_checksum(text) if checksum else text


@pytest.fixture
def make_list() -> Callable[..., str]:
    return build_list
