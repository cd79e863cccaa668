#!/usr/bin/env python3
"""Interactive SpaceLens browser (textual)."""

from __future__ import annotations

from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import Footer, Header, Static

from macbroom.spacelens import SpaceLensModel


class SpaceLensApp(App):
    """Drill through directories by size; every walk runs as an exclusive worker."""

    CSS = """
    #listing {
        padding: 0 1;
    }
    """

    BINDINGS = [
        Binding("q", "nav('q')", "Quit", key_display="Q"),
        Binding("ctrl+c", "nav('ctrl+c')", "Quit", show=False, priority=True),
        Binding("up", "nav('up')", "Up", show=False),
        Binding("k", "nav('k')", "Up", show=False),
        Binding("down", "nav('down')", "Down", show=False),
        Binding("j", "nav('j')", "Down", show=False),
        Binding("enter", "nav('enter')", "Open"),
        Binding("right", "nav('right')", "Open", show=False),
        Binding("l", "nav('l')", "Open", show=False),
        Binding("left", "nav('left')", "Parent"),
        Binding("backspace", "nav('backspace')", "Parent", show=False),
        Binding("h", "nav('h')", "Parent", show=False),
    ]

    TITLE = "macbroom - Space Lens"

    def __init__(self, path: str, model: SpaceLensModel | None = None):
        super().__init__()
        self.model = model or SpaceLensModel(path)

    def compose(self) -> ComposeResult:
        yield Header()
        yield Static(id="listing")
        yield Footer()

    def on_mount(self) -> None:
        self.model.resize(self.size.width, self.size.height)
        self._refresh_listing()
        self._start_load()

    def on_resize(self, event: events.Resize) -> None:
        self.model.resize(event.size.width, event.size.height)
        self._refresh_listing()

    def action_nav(self, key: str) -> None:
        outcome = self.model.handle_key(key)
        if outcome == "quit":
            self.workers.cancel_all()
            self.exit()
            return
        if outcome == "load":
            self._start_load()
        self._refresh_listing()

    def _start_load(self) -> None:
        self.run_worker(self._load(), exclusive=True, group="walk")

    async def _load(self) -> None:
        if await self.model.load():
            self._refresh_listing()

    def _refresh_listing(self) -> None:
        self.sub_title = self.model.path
        self.query_one("#listing", Static).update(Text(self.model.render()))


def run(path: str) -> int:
    app = SpaceLensApp(path)
    app.run()
    return 0
