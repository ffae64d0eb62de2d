from __future__ import annotations
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from apiforge.resolution.key_path import extract

_PLACEHOLDER = re.compile(r"\{\{(.+?)\}\}")
# A single placeholder spanning the whole string; "{{a}}-{{b}}" is not one.
_WHOLE_PLACEHOLDER = re.compile(r"\{\{((?:(?!\{\{|\}\}).)+)\}\}")


# ---------------------------------------------------------------------------
# Compiled template nodes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LiteralNode:
    """Numbers, booleans, None and strings without placeholders."""

    value: Any

    def render(self, item: Any) -> Any:
        return self.value


@dataclass(frozen=True)
class PlaceholderNode:
    """`{{path}}` as the whole value: substitutes the raw extracted value."""

    path: str

    def render(self, item: Any) -> Any:
        return extract(item, self.path)


@dataclass(frozen=True)
class InterpolatedNode:
    """
    A string with embedded placeholders, e.g. "https://cdn/{{id}}.jpg".

    parts alternates literal text (str) and paths (1-tuples), in order.
    Missing values render as "".
    """

    parts: Tuple[Union[str, Tuple[str]], ...]

    def render(self, item: Any) -> str:
        out: List[str] = []
        for part in self.parts:
            if isinstance(part, tuple):
                out.append(_stringify(extract(item, part[0])))
            else:
                out.append(part)
        return "".join(out)


@dataclass(frozen=True)
class ListNode:
    children: Tuple[Any, ...]

    def render(self, item: Any) -> List[Any]:
        return [child.render(item) for child in self.children]


@dataclass(frozen=True)
class MapNode:
    entries: Tuple[Tuple[str, Any], ...]

    def render(self, item: Any) -> Dict[str, Any]:
        return {key: node.render(item) for key, node in self.entries}


TemplateNode = Union[LiteralNode, PlaceholderNode, InterpolatedNode, ListNode, MapNode]


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def compile_template(value: Any, embedded: bool = False) -> TemplateNode:
    """
    Compile a JSON template into a tree of nodes.

    embedded=False is the whole-value flavor used for API data templates:
    only a string that is entirely "{{path}}" is a placeholder, and a
    missing field yields None.

    embedded=True is the feed item flavor: placeholders may also appear
    inside larger strings ("prefix_{{field}}_suffix"), and each embedded
    occurrence of a missing field becomes "". A string that is exactly one
    placeholder still yields the raw value (None if missing).

    A placeholder that never closes is literal text in both flavors.
    """
    if isinstance(value, str):
        return _compile_string(value, embedded)
    if isinstance(value, list):
        return ListNode(tuple(compile_template(v, embedded) for v in value))
    if isinstance(value, dict):
        return MapNode(tuple((k, compile_template(v, embedded)) for k, v in value.items()))
    return LiteralNode(value)


def _compile_string(value: str, embedded: bool) -> TemplateNode:
    whole = _WHOLE_PLACEHOLDER.fullmatch(value)
    if not embedded:
        return PlaceholderNode(whole.group(1).strip()) if whole else LiteralNode(value)
    if whole:
        return PlaceholderNode(whole.group(1))

    parts: List[Union[str, Tuple[str]]] = []
    cursor = 0
    for match in _PLACEHOLDER.finditer(value):
        if match.start() > cursor:
            parts.append(value[cursor:match.start()])
        parts.append((match.group(1),))
        cursor = match.end()
    if not parts:
        return LiteralNode(value)
    if cursor < len(value):
        parts.append(value[cursor:])
    return InterpolatedNode(tuple(parts))


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def apply_template_value(template_value: Any, item: Any) -> Any:
    """Whole-value flavor applied to a single item."""
    return compile_template(template_value).render(item)


def apply_template(items: Any, template: Optional[Dict[str, Any]]) -> Any:
    """
    Map every item of `items` through an object template.

    Returns `items` untouched when there is no template or `items` is not a
    list. The template is compiled once for the whole list.
    """
    if not template or not isinstance(items, list):
        return items
    node = compile_template(template)
    return [node.render(item) for item in items]


def apply_data_map_template(template: Any, item: Any) -> Dict[str, Any]:
    """Embedded flavor for feed item data maps. A non-dict template yields {}."""
    if not isinstance(template, dict):
        return {}
    return compile_template(template, embedded=True).render(item)
