"""Slug and tool-name helpers.

Slugs are the handles templates use to address a node (``{{ fetchUser.body }}``).
They are derived from the display name as camelCase identifiers. Tool names
are the snake_case names under which triggers are exposed to callers.
"""

import re
from collections.abc import Iterable

from toolflow.core.graph_schema import SLUG_PATTERN

# Namespaces the template resolver and Transform expressions provide themselves
RESERVED_SLUGS = frozenset({"secrets", "main", "input"})

_WORD_RE = re.compile(r"[A-Za-z0-9]+")


def _words(name: str) -> list[str]:
    # Split on non-alphanumerics and on lower->upper boundaries ("fetchUser" -> fetch, User)
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name or "")
    return _WORD_RE.findall(spaced)


def to_slug(name: str) -> str:
    """Convert a display name to a camelCase slug.

    >>> to_slug("Fetch User Data")
    'fetchUserData'
    >>> to_slug("2nd step")
    'node2ndStep'
    """
    words = _words(name)
    if not words:
        return "node"
    slug = words[0].lower() + "".join(w[:1].upper() + w[1:].lower() for w in words[1:])
    if slug[0].isdigit():
        slug = "node" + slug[0].upper() + slug[1:]
    return slug


def is_valid_slug(slug: str) -> bool:
    return bool(slug) and bool(SLUG_PATTERN.match(slug)) and slug not in RESERVED_SLUGS


def generate_unique_slug(name: str, existing: Iterable[str]) -> str:
    """Slug for ``name`` that collides with neither ``existing`` nor a reserved name.

    Collisions get a numeric suffix: ``fetchUser``, ``fetchUser2``, ``fetchUser3``...
    """
    taken = set(existing)
    base = to_slug(name)
    if base in RESERVED_SLUGS:
        base = f"{base}Node"
    slug = base
    counter = 2
    while slug in taken:
        slug = f"{base}{counter}"
        counter += 1
    return slug


def to_tool_name(name: str) -> str:
    """Convert a display name to a snake_case tool name.

    >>> to_tool_name("Get Weather Forecast")
    'get_weather_forecast'
    """
    words = [w.lower() for w in _words(name)]
    tool_name = "_".join(words) or "tool"
    if tool_name[0].isdigit():
        tool_name = f"tool_{tool_name}"
    return tool_name


def generate_unique_tool_name(name: str, existing: Iterable[str]) -> str:
    taken = set(existing)
    base = to_tool_name(name)
    tool_name = base
    counter = 2
    while tool_name in taken:
        tool_name = f"{base}_{counter}"
        counter += 1
    return tool_name
