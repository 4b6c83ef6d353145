"""Public shim exposing the video_restyle CLI and library surface."""

from __future__ import annotations

from typing import Callable, Iterable, Optional, cast

import src.video_restyle.cli_entry as _cli_entry
import src.video_restyle.preflight as _preflight
from src.video_restyle import runner
from src.video_restyle.cli_runtime import CLIAppError
from src.video_restyle.errors import (
    BackendFailure,
    ExternalToolFailure,
    NoLiveBackendsError,
    SceneFailedError,
)

prepare_preflight = _preflight.prepare_preflight
resolve_workspace_root = _preflight.resolve_workspace_root
PreflightResult = _preflight.PreflightResult

RunResult = runner.RunResult
RunRequest = runner.RunRequest
RunDependencies = runner.RunDependencies

__all__ = (
    "run_cli",
    "main",
    "RunRequest",
    "RunResult",
    "RunDependencies",
    "CLIAppError",
    "BackendFailure",
    "ExternalToolFailure",
    "NoLiveBackendsError",
    "SceneFailedError",
    "prepare_preflight",
    "resolve_workspace_root",
    "PreflightResult",
)


def run_cli(
    config_path: str | None = None,
    *,
    root_override: str | None = None,
    stride: Optional[int] = None,
    mask_gain: Optional[float] = None,
    max_scenes: Optional[int] = None,
    backends: Iterable[str] | None = None,
    template: str | None = None,
    anchor_template: str | None = None,
    rescan_scenes: bool = False,
    quiet: bool = False,
    verbose: bool = False,
    dependencies: runner.RunDependencies | None = None,
) -> RunResult:
    """Delegate to the shared runner module."""
    request = RunRequest(
        config_path=config_path,
        root_override=root_override,
        stride=stride,
        mask_gain=mask_gain,
        max_scenes=max_scenes,
        backends=tuple(backends or ()),
        template=template,
        anchor_template=anchor_template,
        rescan_scenes=rescan_scenes,
        quiet=quiet,
        verbose=verbose,
    )
    return runner.run(request, dependencies=dependencies)


main = _cli_entry.main
cli = getattr(_cli_entry, "cli", main)


if __name__ == "__main__":
    _entry_point = cast(Callable[[], None], _cli_entry.entry)
    _entry_point()
