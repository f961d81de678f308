"""
Rich live printer for displaying a generation session's caller events.
"""
from typing import Any, AsyncIterator, Dict, List, Optional
from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text
import json

from .types import CallerEvent

console = Console()
_default_console = console


class RichStreamPrinter:
    """
    Renders `GenerationSession.run()` output live in the terminal.

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show usage/attempt metadata at the end
        code_theme: Theme for code blocks
        inline_code_theme: Theme for inline code
        refresh_rate: Refresh rate for Live display
        border_style: Border style while streaming
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.border_style = border_style
        self.console = console or _default_console
        self._text = ""
        self._committed = ""
        self._attempt = 1
        self._tool_lines: List[str] = []
        self._final: Optional[CallerEvent] = None

    async def print_stream(self, events: AsyncIterator[CallerEvent]) -> Optional[CallerEvent]:
        """
        Display events until the session ends.

        Returns:
            The terminal `done` or `error` event, or None if the session was cancelled.
        """
        self._text = ""
        self._committed = ""
        self._attempt = 1
        self._tool_lines = []
        self._final = None

        with Live(Panel("", border_style=self.border_style), refresh_per_second=self.refresh_rate,
                  console=self.console) as live:
            async for event in events:
                self._process_event(event)
                live.update(self._render())
        return self._final

    def _process_event(self, event: CallerEvent) -> None:
        data = event.data
        if event.type == "delta":
            # A new attempt restarts the current round; its earlier deltas were provisional
            if data.get("attempt", 1) != self._attempt:
                self._attempt = data["attempt"]
                self._text = self._committed
            self._text += data.get("text", "")
        elif event.type == "tool_status":
            # Tools only run after a round completed, so its text is kept
            self._committed = self._text
            line = f"{data.get('name')} [{data.get('call_id')}]: {data.get('status')}"
            if data.get("error"):
                line += f" - {data['error']}"
            self._tool_lines.append(line)
        elif event.type in ("done", "error"):
            self._final = event
            if event.type == "done":
                self._text = data.get("text", self._text)

    def _render(self) -> Panel:
        final = self._final
        if final is not None and final.type == "error":
            return Panel(
                Text(f"{final.data.get('kind')}: {final.data.get('message')}", style="bold red"),
                title="[bold]Error[/bold]",
                border_style="red",
                padding=(1, 2),
            )

        parts: List[Any] = []
        if self._tool_lines:
            parts.append(Text("\n".join(self._tool_lines), style="dim cyan"))
        if self._text.strip():
            parts.append(Markdown(self._text, code_theme=self.code_theme, inline_code_theme=self.inline_code_theme))
        elif not parts:
            parts.append(Text("(waiting for response...)", style="dim italic"))

        if final is not None and self.show_metadata:
            parts.append(self._metadata_panel(final.data))

        title = "[bold]Final Response[/bold]" if final is not None else f"[bold]{self.title}[/bold]"
        if self._attempt > 1:
            title += f" [dim](attempt {self._attempt})[/dim]"
        return Panel(
            Group(*parts),
            title=title,
            border_style="green" if final is not None else self.border_style,
            padding=(1, 2),
        )

    @staticmethod
    def _metadata_panel(data: Dict[str, Any]) -> Panel:
        meta = {k: v for k, v in data.items() if k != "text"}
        return Panel(
            Syntax(json.dumps(meta, indent=2, default=str), "json", theme="lightbulb", background_color="default"),
            title="[bold]Metadata[/bold]",
            border_style="dim",
        )

    def get_full_text(self) -> str:
        """Get the text assembled so far."""
        return self._text

    def get_final_event(self) -> Optional[CallerEvent]:
        return self._final
