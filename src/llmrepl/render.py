from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional

from pyfiglet import figlet_format
from rich.align import Align
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from llmrepl.core.state import RenderMode, Snapshot, Theme


@dataclass(frozen=True)
class Palette:
    bracket: str
    provider: str
    model: str
    arrow: str
    info: str
    error: str
    success: str
    raw: str
    code_theme: str


PALETTES: Dict[Theme, Palette] = {
    Theme.DEFAULT: Palette("white", "cyan", "magenta", "green", "blue", "red", "green", "white", "monokai"),
    Theme.NORD: Palette("#4C566A", "#88C0D0", "#B48EAD", "#A3BE8C", "#81A1C1", "#BF616A", "#A3BE8C", "#D8DEE9", "nord"),
    Theme.GRUVBOX: Palette("#928374", "#83A598", "#D3869B", "#B8BB26", "#FABD2F", "#FB4934", "#B8BB26", "#EBDBB2", "gruvbox-dark"),
    Theme.GRAYSCALE: Palette("grey50", "grey85", "grey70", "grey93", "grey62", "bold white", "grey85", "grey78", "bw"),
}


def palette_for(theme: Theme) -> Palette:
    return PALETTES[Theme(theme)]


def _pick_font(width: int) -> str:
    # first rule where width <= max_width
    for max_width, name in ((60, "small"), (100, "standard"), (10_000, "slant")):
        if width <= max_width:
            return name
    return "standard"


class Renderer:
    """Presentation only: reads a Snapshot, never touches session state."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def banner(self, title: str = "LLM REPL", version: Optional[str] = None, subtitle: Optional[str] = None) -> None:
        art = figlet_format(title, font=_pick_font(self.console.width))
        art = "\n".join(line.rstrip() for line in art.splitlines())
        self.console.print(Panel(Align.center(art), title=version, subtitle=subtitle, border_style="cyan", expand=True))

    def prompt(self, snap: Snapshot) -> str:
        p = palette_for(snap.theme)
        return (
            f"[{p.bracket}]\\[[/][{p.provider}]{escape(snap.backend)}[/][{p.bracket}]:[/]"
            f"[{p.model}]{escape(snap.model)}[/][{p.bracket}]][/][{p.arrow}]>> [/]"
        )

    def info(self, text: str, theme: Theme) -> None:
        self.console.print(Text(text, style=palette_for(theme).info))

    def error(self, text: str, theme: Theme) -> None:
        self.console.print(Text(text, style=palette_for(theme).error))

    def command_output(self, text: str, snap: Snapshot, *, plain: bool = False) -> None:
        p = palette_for(snap.theme)
        if plain:
            self.console.print(Text(text, style=p.success))
        elif snap.render_mode is RenderMode.OFF:
            self.console.print(Text(text, style=p.raw))
        else:
            self.console.print(Markdown(text, code_theme=p.code_theme))

    def shell_output(self, text: str) -> None:
        self.console.print(Text(text.rstrip()))

    def stream_view(self, snap: Snapshot) -> "StreamView":
        return StreamView(self.console, snap)


class StreamView:
    """
    Incremental display of one streamed response.
      append: raw deltas as they arrive, then the formatted markdown below
      live:   markdown re-rendered in place on every delta
      off:    raw deltas only
    """

    def __init__(self, console: Console, snap: Snapshot):
        self.console = console
        self.mode = snap.render_mode
        self.palette = palette_for(snap.theme)
        self._live: Optional[Live] = None

    def __enter__(self) -> "StreamView":
        if self.mode is RenderMode.LIVE:
            self._live = Live(Markdown(""), console=self.console, refresh_per_second=12, vertical_overflow="visible")
            self._live.__enter__()
        return self

    def on_fragment(self, delta: str, accumulated: str) -> None:
        if self._live is not None:
            self._live.update(Markdown(accumulated, code_theme=self.palette.code_theme))
        else:
            self.console.print(Text(delta, style=self.palette.raw), end="")

    def finish(self, text: str, status: str) -> None:
        if self._live is not None:
            self._live.update(Markdown(text, code_theme=self.palette.code_theme))
        else:
            self.console.print()
        if status == "cancelled":
            self.console.print(Text("[ stream cancelled: partial output kept ]", style=self.palette.info))
        elif status == "failed":
            self.console.print(Text("[ stream failed: partial output kept ]", style=self.palette.error))
        elif self.mode is RenderMode.APPEND and text.strip():
            self.console.rule(style=self.palette.bracket)
            self.console.print(Markdown(text, code_theme=self.palette.code_theme))

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._live is not None:
            self._live.__exit__(exc_type, exc, tb)
            self._live = None
