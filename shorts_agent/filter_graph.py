"""Declarative ffmpeg filter graphs for vertical caption renders.

A graph is an ordered list of :class:`FilterNode` objects. Nodes hold their
option values unescaped; :func:`to_filter_complex` is the only place where text
is turned into ffmpeg syntax, so transcript text can never leak into the
command structure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from .config import MediaConfig

TERMINAL_NODE = "final"

# Characters with meaning inside a single filter option value.
_OPTION_SPECIAL = "\\':="
# Characters with meaning at the filtergraph level (between filters and chains).
_GRAPH_SPECIAL = "\\'[],;"

_RAW_INPUT = re.compile(r"^\d+:[av]$")
_WHITESPACE = re.compile(r"[\r\n\t\v\f]+")


def _escape(text: str, special: str) -> str:
    return "".join("\\" + char if char in special else char for char in text)


def _unescape(text: str) -> str:
    out: List[str] = []
    chars = iter(text)
    for char in chars:
        if char == "\\":
            char = next(chars, "")
        out.append(char)
    return "".join(out)


def escape_option_value(value: str) -> str:
    """Escape a filter option value (first ffmpeg escaping level)."""
    return _escape(value, _OPTION_SPECIAL)


def unescape_option_value(value: str) -> str:
    return _unescape(value)


def escape_filter_description(description: str) -> str:
    """Escape a complete ``name=opts`` filter description (second level)."""
    return _escape(description, _GRAPH_SPECIAL)


def unescape_filter_description(description: str) -> str:
    return _unescape(description)


def normalize_caption(caption: Optional[str]) -> str:
    """Collapse control whitespace that drawtext would draw as glyphs."""
    if not caption:
        return ""
    return _WHITESPACE.sub(" ", caption).strip()


@dataclass(frozen=True)
class FilterNode:
    filter: str
    options: Tuple[Tuple[str, str], ...]
    inputs: Tuple[str, ...]
    output: str

    def option(self, name: str) -> Optional[str]:
        for key, value in self.options:
            if key == name:
                return value
        return None


class FilterGraph:
    """Ordered filter nodes where every input is a raw stream or an earlier output."""

    def __init__(self, nodes: Sequence[FilterNode] = ()):
        self._nodes: List[FilterNode] = []
        for node in nodes:
            self.add(node)

    def add(self, node: FilterNode) -> FilterNode:
        declared = {existing.output for existing in self._nodes}
        if not node.inputs:
            raise ValueError(f"Filter '{node.output}' has no inputs")
        for ref in node.inputs:
            if not _RAW_INPUT.match(ref) and ref not in declared:
                raise ValueError(f"Filter '{node.output}' references undeclared input '{ref}'")
        if node.output in declared or _RAW_INPUT.match(node.output):
            raise ValueError(f"Duplicate or reserved output name '{node.output}'")
        self._nodes.append(node)
        return node

    @property
    def nodes(self) -> Tuple[FilterNode, ...]:
        return tuple(self._nodes)

    @property
    def terminal(self) -> str:
        if not self._nodes:
            raise ValueError("Empty filter graph")
        return self._nodes[-1].output

    def __iter__(self) -> Iterator[FilterNode]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FilterGraph):
            return NotImplemented
        return self._nodes == other._nodes

    def __repr__(self) -> str:
        return f"FilterGraph({[node.output for node in self._nodes]})"


def build_filter_graph(
    caption: str,
    font_path: Union[str, Path],
    media_config: Optional[MediaConfig] = None,
) -> Tuple[FilterGraph, str]:
    """Build the four-node caption graph.

    Input 0 is the segment, input 1 the fixed secondary clip. Returns the graph
    and the name of its terminal node, which the renderer must map.
    """

    cfg = media_config or MediaConfig()
    graph = FilterGraph()
    graph.add(
        FilterNode(
            filter="scale",
            options=(("w", str(cfg.width)), ("h", str(cfg.height))),
            inputs=("0:v",),
            output="main_scaled",
        )
    )
    graph.add(
        FilterNode(
            filter="drawtext",
            options=(
                ("fontfile", str(font_path)),
                ("text", normalize_caption(caption)),
                ("expansion", "none"),
                ("fontsize", str(cfg.font_size)),
                ("fontcolor", cfg.font_color),
                ("x", "(w-text_w)/2"),
                ("y", str(cfg.text_y)),
            ),
            inputs=("main_scaled",),
            output="main_text",
        )
    )
    graph.add(
        FilterNode(
            filter="scale",
            # -2 keeps the aspect ratio and rounds the width to an even number.
            options=(("w", "-2"), ("h", str(cfg.overlay_height))),
            inputs=("1:v",),
            output="ss_scaled",
        )
    )
    graph.add(
        FilterNode(
            filter="overlay",
            options=(("x", "0"), ("y", f"main_h-overlay_h-{cfg.overlay_margin}")),
            inputs=("main_text", "ss_scaled"),
            output=TERMINAL_NODE,
        )
    )
    return graph, graph.terminal


def node_to_filter_spec(node: FilterNode) -> str:
    description = node.filter
    if node.options:
        description += "=" + ":".join(f"{key}={escape_option_value(value)}" for key, value in node.options)
    labels_in = "".join(f"[{ref}]" for ref in node.inputs)
    return f"{labels_in}{escape_filter_description(description)}[{node.output}]"


def to_filter_complex(graph: FilterGraph) -> str:
    """Render a graph as an ffmpeg ``-filter_complex`` argument."""
    return ";".join(node_to_filter_spec(node) for node in graph)
