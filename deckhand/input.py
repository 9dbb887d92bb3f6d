"""Line-oriented user input sources."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque

from rich.console import Console

EXIT_HINT = "(To exit the CLI, press Ctrl+C or Ctrl+D again or type /quit)"


class InputSource(ABC):
    """Where user input comes from."""

    interactive: bool = True

    @abstractmethod
    async def read_line(self, prompt: str) -> str | None:
        """Read one line; None means the user wants to leave."""
        pass

    async def confirm(self, prompt: str) -> bool:
        line = await self.read_line(prompt)
        return bool(line) and line.strip().lower() in ("y", "yes")


class ConsoleInput(InputSource):
    """Reads from the terminal.

    Reads block the event loop on purpose: nothing else runs while the user
    is being prompted, and it keeps Ctrl+C delivered to this reader.
    """

    def __init__(self, console: Console):
        self.console = console

    async def read_line(self, prompt: str) -> str | None:
        ctrl_c = False
        while True:
            try:
                return self.console.input(prompt)
            except EOFError:
                return None
            except KeyboardInterrupt:
                if ctrl_c:
                    return None
                self.console.print(f"\n[dim]{EXIT_HINT}[/dim]\n")
                ctrl_c = True


class ScriptedInput(InputSource):
    """Replays a fixed list of lines, then reports end of input."""

    def __init__(self, lines: list[str] | None = None, interactive: bool = True):
        self._lines: deque[str] = deque(lines or [])
        self.interactive = interactive
        self.prompts: list[str] = []

    def feed(self, *lines: str) -> None:
        self._lines.extend(lines)

    @property
    def remaining(self) -> int:
        return len(self._lines)

    async def read_line(self, prompt: str) -> str | None:
        self.prompts.append(prompt)
        if not self._lines:
            return None
        return self._lines.popleft()
