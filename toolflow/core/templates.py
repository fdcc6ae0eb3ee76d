"""Template variable resolution for node parameters.

Supports ``{{ slug }}`` and ``{{ slug.path.to.field }}`` placeholders embedded
in any string parameter. Resolution is a single regex scan: there are no
filters, loops or expressions, so the surface exposed to flow authors stays
small. Expression evaluation belongs to the Transform node, which uses a
sandboxed Jinja2 environment instead.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any, NamedTuple

from toolflow.core.url_guard import sanitize_mock_value

logger = logging.getLogger(__name__)

# Non-greedy up to the first closing braces
TEMPLATE_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")

# {{ <uuid>.path }} references written before nodes had slugs
UUID_REFERENCE_RE = re.compile(r"\{\{\s*([a-f0-9-]{36})\.([^}]+?)\s*\}\}")

_MISSING = object()


class UnresolvedTemplateVariable(Exception):
    """A placeholder could not be resolved and the node requires it."""

    def __init__(self, message: str, variables: list[str] | None = None):
        super().__init__(message)
        self.variables = variables or []


class TemplateResolution(NamedTuple):
    resolved: Any
    unresolved_vars: list[str]


class TemplateReference(NamedTuple):
    raw: str
    slug: str
    path: str


def _navigate(value: Any, segments: list[str]) -> Any:
    current = value
    for segment in segments:
        if isinstance(current, Mapping):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return _MISSING if current is None else current


def resolve_template_variables(template: Any, values: Mapping[str, Any]) -> TemplateResolution:
    """Substitute ``{{ path }}`` placeholders in ``template`` from ``values``.

    ``values`` maps a root name (node slug, node id, ``secrets``) to that
    node's output. Placeholders that cannot be resolved stay verbatim and
    their trimmed paths are reported in ``unresolved_vars``. Resolved values
    are inserted in sanitized string form, so a value that looks like a URL
    becomes ``[blocked-url]``.

    Non-string templates are returned unchanged.
    """
    if not isinstance(template, str):
        return TemplateResolution(template, [])

    unresolved: list[str] = []

    def replace(match: re.Match) -> str:
        path = match.group(1).strip()
        root, *segments = path.split(".")
        if root not in values:
            unresolved.append(path)
            return match.group(0)
        value = _navigate(values[root], segments)
        if value is _MISSING:
            unresolved.append(path)
            return match.group(0)
        return sanitize_mock_value(value)

    resolved = TEMPLATE_RE.sub(replace, template)
    return TemplateResolution(resolved, unresolved)


def resolve_parameters(
    parameters: Any,
    values: Mapping[str, Any],
    skip: Iterable[str] = (),
) -> TemplateResolution:
    """Resolve every string inside a parameter structure.

    Top-level keys listed in ``skip`` are copied through untouched. The
    unresolved paths are de-duplicated, first occurrence first.
    """
    skip = set(skip)
    unresolved: list[str] = []

    def walk(value: Any) -> Any:
        if isinstance(value, str):
            result = resolve_template_variables(value, values)
            unresolved.extend(result.unresolved_vars)
            return result.resolved
        if isinstance(value, Mapping):
            return {k: walk(v) for k, v in value.items()}
        if isinstance(value, list):
            return [walk(v) for v in value]
        return value

    if isinstance(parameters, Mapping):
        resolved = {k: (v if k in skip else walk(v)) for k, v in parameters.items()}
    else:
        resolved = walk(parameters)

    return TemplateResolution(resolved, list(dict.fromkeys(unresolved)))


def parse_template_references(template: Any) -> list[TemplateReference]:
    if not isinstance(template, str):
        return []
    refs = []
    for match in TEMPLATE_RE.finditer(template):
        path = match.group(1).strip()
        if not path:
            continue
        slug, _, rest = path.partition(".")
        refs.append(TemplateReference(raw=match.group(0), slug=slug, path=rest))
    return refs


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _iter_strings(v)
    elif isinstance(value, list):
        for v in value:
            yield from _iter_strings(v)


def get_referenced_slugs(parameters: Any) -> set[str]:
    """All root names referenced by placeholders anywhere in ``parameters``."""
    return {
        ref.slug for text in _iter_strings(parameters) for ref in parse_template_references(text)
    }


def rename_slug_in_template(template: str, old_slug: str, new_slug: str) -> str:
    """Rewrite ``{{ old }}`` and ``{{ old.path }}`` to use ``new_slug``.

    Only the root segment is matched; ``{{ oldSuffix.x }}`` and
    ``{{ other.old }}`` are left alone. Whitespace inside the braces is kept.
    """
    pattern = re.compile(r"(\{\{\s*)" + re.escape(old_slug) + r"(?=\s*(?:\.|\}\}))")
    return pattern.sub(lambda m: m.group(1) + new_slug, template)


def update_slug_references(parameters: Any, old_slug: str, new_slug: str) -> Any:
    """Return a copy of ``parameters`` with every reference to ``old_slug`` renamed."""
    if isinstance(parameters, str):
        return rename_slug_in_template(parameters, old_slug, new_slug)
    if isinstance(parameters, Mapping):
        return {k: update_slug_references(v, old_slug, new_slug) for k, v in parameters.items()}
    if isinstance(parameters, list):
        return [update_slug_references(v, old_slug, new_slug) for v in parameters]
    return parameters


def migrate_template_references(parameters: Any, id_to_slug: Mapping[str, str]) -> Any:
    """Rewrite ``{{ <node-uuid>.path }}`` references to ``{{ slug.path }}``.

    References to ids not present in ``id_to_slug`` are kept as they are.
    """
    if isinstance(parameters, str):

        def replace(match: re.Match) -> str:
            slug = id_to_slug.get(match.group(1))
            if slug is None:
                return match.group(0)
            return f"{{{{ {slug}.{match.group(2).strip()} }}}}"

        return UUID_REFERENCE_RE.sub(replace, parameters)
    if isinstance(parameters, Mapping):
        return {k: migrate_template_references(v, id_to_slug) for k, v in parameters.items()}
    if isinstance(parameters, list):
        return [migrate_template_references(v, id_to_slug) for v in parameters]
    return parameters
