#!/usr/bin/env python3
"""SpaceLens: one-level disk usage breakdown with drill-in navigation.

- SpaceLens.analyze(): immediate children of a directory, each sized by a
  full recursive walk, largest first
- SpaceLensModel: navigation state (path, nodes, cursor, scroll, loading)
  with the walk pushed to a worker thread per step
- render_bar_list(): text bar chart of the visible window only
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
from typing import Any, Callable

from macbroom.core import Cancelled, CancelToken, dir_size, human_bytes

NAME_WIDTH_MAX = 30
SIZE_COLUMN = 10
BAR_MIN = 10
CHROME_LINES = 7
VISIBLE_MIN = 4

BAR_FULL = "█"
BAR_EMPTY = "░"
ELLIPSIS = "…"


@dataclasses.dataclass(frozen=True, slots=True)
class SpaceLensNode:
    name: str
    path: str
    size: int
    is_dir: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "size_human": human_bytes(self.size),
            "is_dir": self.is_dir,
        }


class SpaceLens:
    """Size every immediate child of ``path``."""

    def __init__(self, path: str):
        self.path = os.path.abspath(os.path.expanduser(path))

    def analyze(self, token: CancelToken) -> list[SpaceLensNode]:
        token.check()
        with os.scandir(self.path) as it:
            entries = sorted(it, key=lambda e: e.name)

        nodes: list[SpaceLensNode] = []
        for entry in entries:
            token.check()
            try:
                if entry.is_dir(follow_symlinks=False):
                    nodes.append(SpaceLensNode(entry.name, entry.path, dir_size(entry.path, token), True))
                else:
                    size = entry.stat(follow_symlinks=False).st_size
                    nodes.append(SpaceLensNode(entry.name, entry.path, int(size), False))
            except OSError:
                continue
        nodes.sort(key=lambda n: (-n.size, n.name))
        return nodes


# ------------------------------- Rendering ---------------------------------- #


def _display_name(node: SpaceLensNode) -> str:
    return node.name + "/" if node.is_dir else node.name


def render_bar_list(
    nodes: list[SpaceLensNode],
    width: int,
    height: int,
    cursor: int,
    scroll_offset: int,
) -> str:
    """One line per visible node: ``<bar>  <name> <size>``.

    Only rows in ``[scroll_offset, scroll_offset + height)`` are formatted.
    """
    if not nodes:
        return "  Empty directory.\n"

    max_size = max(n.size for n in nodes) or 1
    name_width = min(NAME_WIDTH_MAX, max(len(_display_name(n)) for n in nodes))
    bar_width = max(BAR_MIN, width - name_width - 16)

    end = min(scroll_offset + height, len(nodes))
    lines: list[str] = []
    for i in range(scroll_offset, end):
        node = nodes[i]
        filled = int(node.size / max_size * bar_width)
        if filled < 1 and node.size > 0:
            filled = 1
        bar = BAR_FULL * filled + BAR_EMPTY * (bar_width - filled)

        name = _display_name(node)
        if len(name) > name_width:
            name = name[: name_width - 1] + ELLIPSIS

        prefix = "> " if i == cursor else "  "
        lines.append(f"{prefix}{bar}  {name:<{name_width}} {human_bytes(node.size):>{SIZE_COLUMN}}")

    if len(nodes) > height:
        lines.append(f"  [{scroll_offset + 1}-{end} of {len(nodes)}]")
    return "\n".join(lines) + "\n"


# -------------------------------- Model ------------------------------------- #


class SpaceLensModel:
    """Navigation state machine: Loading(path) -> Ready(path, nodes).

    Every transition into Loading cancels the previous step's token, and
    results for a path the model has since left are dropped.
    """

    def __init__(
        self,
        path: str,
        width: int = 80,
        height: int = 24,
        lens_factory: Callable[[str], SpaceLens] = SpaceLens,
    ):
        self.lens_factory = lens_factory
        self.width = width
        self.height = height
        self.path = os.path.abspath(os.path.expanduser(path))
        self.nodes: list[SpaceLensNode] = []
        self.cursor = 0
        self.scroll_offset = 0
        self.loading = True
        self.error: str | None = None
        self.token = CancelToken()

    @property
    def visible_lines(self) -> int:
        return max(VISIBLE_MIN, self.height - CHROME_LINES)

    @property
    def total_size(self) -> int:
        return sum(n.size for n in self.nodes)

    @property
    def selected(self) -> SpaceLensNode | None:
        if 0 <= self.cursor < len(self.nodes):
            return self.nodes[self.cursor]
        return None

    # Navigation

    def move_up(self) -> bool:
        if self.loading or self.cursor <= 0:
            return False
        self.cursor -= 1
        self._ensure_visible()
        return True

    def move_down(self) -> bool:
        if self.loading or self.cursor >= len(self.nodes) - 1:
            return False
        self.cursor += 1
        self._ensure_visible()
        return True

    def drill_in(self) -> bool:
        node = self.selected
        if self.loading or node is None or not node.is_dir:
            return False
        self._begin(node.path)
        return True

    def drill_out(self) -> bool:
        if self.loading:
            return False
        trimmed = self.path.rstrip(os.sep)
        cut = trimmed.rfind(os.sep)
        # top-level paths like /Users count as roots
        if cut <= 0:
            return False
        self._begin(trimmed[:cut])
        return True

    def quit(self) -> None:
        self.token.cancel()

    def resize(self, width: int, height: int) -> None:
        self.width = width
        self.height = height
        self._ensure_visible()

    def handle_key(self, key: str) -> str | None:
        """Apply a key press; returns ``"load"``, ``"quit"`` or None."""
        if key in ("q", "ctrl+c"):
            self.quit()
            return "quit"
        if key in ("up", "k"):
            self.move_up()
        elif key in ("down", "j"):
            self.move_down()
        elif key in ("enter", "right", "l"):
            return "load" if self.drill_in() else None
        elif key in ("left", "backspace", "h"):
            return "load" if self.drill_out() else None
        return None

    # Loading

    async def load(self) -> bool:
        """Walk the current path off the event loop; False if the result was dropped."""
        path = self.path
        token = self.token
        lens = self.lens_factory(path)
        try:
            nodes = await asyncio.to_thread(lens.analyze, token)
        except Cancelled:
            return False
        except OSError as exc:
            if token is not self.token:
                return False
            self.nodes = []
            self.error = str(exc)
            self.loading = False
            return True

        if token is not self.token or path != self.path:
            return False
        self.nodes = nodes
        self.error = None
        self.loading = False
        self.cursor = 0
        self.scroll_offset = 0
        return True

    def render(self) -> str:
        if self.loading:
            return f"{self.path}\n\nAnalyzing...\n"
        header = f"{self.path} ({human_bytes(self.total_size)})\n\n"
        if self.error:
            return header + f"  {self.error}\n"
        return header + render_bar_list(self.nodes, self.width, self.visible_lines, self.cursor, self.scroll_offset)

    def _begin(self, path: str) -> None:
        self.token.cancel()
        self.token = CancelToken()
        self.path = path
        self.nodes = []
        self.error = None
        self.cursor = 0
        self.scroll_offset = 0
        self.loading = True

    def _ensure_visible(self) -> None:
        visible = self.visible_lines
        if self.cursor < self.scroll_offset:
            self.scroll_offset = self.cursor
        elif self.cursor >= self.scroll_offset + visible:
            self.scroll_offset = self.cursor - visible + 1


__all__ = [
    "SpaceLens",
    "SpaceLensModel",
    "SpaceLensNode",
    "render_bar_list",
]
