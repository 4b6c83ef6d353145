"""Runtime data structures and CLI helpers shared between Click wiring and the runner."""

from __future__ import annotations

import io
from typing import List, Optional, Protocol

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    ProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

__all__ = [
    "CLIAppError",
    "CliOutputManager",
    "CliOutputManagerProtocol",
    "NullCliOutputManager",
    "default_progress_columns",
]


class CLIAppError(RuntimeError):
    """Raised when the CLI cannot complete its work."""

    def __init__(self, message: str, *, code: int = 1, rich_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.rich_message = rich_message or message


class CliOutputManagerProtocol(Protocol):
    quiet: bool
    verbose: bool
    console: Console

    def warn(self, text: str) -> None: ...

    def get_warnings(self) -> List[str]: ...

    def banner(self, text: str) -> None: ...

    def line(self, text: str) -> None: ...

    def verbose_line(self, text: str) -> None: ...

    def progress(self, *columns: ProgressColumn, transient: bool = False) -> Progress: ...


def default_progress_columns() -> tuple[ProgressColumn, ...]:
    return (
        TextColumn("[bold cyan]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
    )


class CliOutputManager:
    """Console presentation for interactive runs."""

    def __init__(
        self,
        *,
        quiet: bool,
        verbose: bool,
        no_color: bool = False,
        console: Console | None = None,
    ) -> None:
        self.quiet = quiet
        self.verbose = verbose and not quiet
        self.no_color = no_color
        self.console = console or Console(no_color=no_color, highlight=False)
        self._warnings: List[str] = []

    def warn(self, text: str) -> None:
        self._warnings.append(text)

    def get_warnings(self) -> List[str]:
        return list(self._warnings)

    def banner(self, text: str) -> None:
        if self.quiet:
            self.console.print(text)
            return
        self.console.print(f"[bold bright_cyan]{escape(text)}[/]")

    def line(self, text: str) -> None:
        if self.quiet:
            return
        self.console.print(text)

    def verbose_line(self, text: str) -> None:
        if self.quiet or not self.verbose:
            return
        if not text:
            return
        self.console.print(f"[dim]{escape(text)}[/]")

    def progress(self, *columns: ProgressColumn, transient: bool = False) -> Progress:
        return Progress(
            *(columns or default_progress_columns()),
            console=self.console,
            transient=transient,
            disable=self.quiet,
        )


class NullCliOutputManager(CliOutputManagerProtocol):
    """
    Output manager that discards console output.

    Used by library callers and tests that only want the :class:`RunResult`
    while still collecting warnings.
    """

    def __init__(self, *, quiet: bool = True, verbose: bool = False) -> None:
        self.quiet = quiet
        self.verbose = verbose
        self.console = Console(file=io.StringIO(), no_color=True, highlight=False)
        self._warnings: List[str] = []

    def warn(self, text: str) -> None:
        self._warnings.append(text)

    def get_warnings(self) -> List[str]:
        return list(self._warnings)

    def banner(self, text: str) -> None:  # noqa: ARG002
        return

    def line(self, text: str) -> None:  # noqa: ARG002
        return

    def verbose_line(self, text: str) -> None:  # noqa: ARG002
        return

    def progress(self, *columns: ProgressColumn, transient: bool = False) -> Progress:  # noqa: ARG002
        return Progress(console=self.console, transient=transient, disable=True)
