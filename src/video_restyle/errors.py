"""Exception hierarchy shared by the restyle pipeline."""

from __future__ import annotations

from typing import Optional, Sequence

__all__ = [
    "ArtifactTimeoutError",
    "BackendFailure",
    "ExternalToolFailure",
    "NoLiveBackendsError",
    "RestyleError",
    "SceneFailedError",
]


class RestyleError(RuntimeError):
    """Base class for pipeline failures."""


class BackendFailure(RestyleError):
    """Raised when a generation backend rejects or fails a job."""

    def __init__(self, message: str, *, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint


class ArtifactTimeoutError(BackendFailure):
    """Raised when a job's output artifact does not appear within the configured bound."""


class NoLiveBackendsError(RestyleError):
    """Raised when every configured backend has been marked dead."""


class ExternalToolFailure(RestyleError):
    """Raised when ffmpeg or the motion-warp tool exits unsuccessfully."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: Optional[int],
        stderr: str = "",
        *,
        reason: Optional[str] = None,
    ) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        tool = self.argv[0] if self.argv else "<unknown>"
        if reason is not None:
            detail = reason
        elif returncode is None:
            detail = "timed out"
        else:
            detail = f"exited with status {returncode}"
        message = f"{tool} {detail}"
        tail = stderr.strip().splitlines()[-3:]
        if tail:
            message = f"{message}: {' | '.join(tail)}"
        super().__init__(message)


class SceneFailedError(RestyleError):
    """Raised when a scene pipeline aborts; wraps the first node failure."""

    def __init__(self, scene_index: int, slide: int | None, cause: BaseException) -> None:
        where = f" at slide {slide}" if slide is not None else ""
        super().__init__(f"scene {scene_index} failed{where}: {cause}")
        self.scene_index = scene_index
        self.slide = slide
        self.cause = cause
