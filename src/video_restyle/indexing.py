"""Frame/slide index arithmetic and on-disk artifact naming.

The scheduler works exclusively in slide indices (1-based). Raw frame indices
only appear when talking to the filesystem or the external tools, and every
conversion between the two spaces goes through :class:`SlideSpace`.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Final, List

__all__ = [
    "INDEX_WIDTH",
    "ArtifactLayout",
    "SlideSpace",
    "format_index",
]

INDEX_WIDTH: Final[int] = 6
"""Zero-padded width used for every indexed file name."""


def format_index(index: int) -> str:
    """Return ``index`` as a fixed-width file stem (``7`` -> ``000007``)."""

    if index < 0:
        raise ValueError(f"index must be >= 0, got {index}")
    return str(index).zfill(INDEX_WIDTH)


@dataclass(frozen=True, slots=True)
class SlideSpace:
    """Mapping between raw frame indices and processed slide indices."""

    stride: int = 1
    anchor_frame: int = 1

    def __post_init__(self) -> None:
        if self.stride < 1:
            raise ValueError("stride must be >= 1")
        if self.anchor_frame < 1:
            raise ValueError("anchor_frame must be >= 1")

    def frame_of(self, slide: int) -> int:
        if slide < 1:
            raise ValueError(f"slide index must be >= 1, got {slide}")
        return self.anchor_frame + (slide - 1) * self.stride

    def slide_of(self, frame: int) -> int:
        """Return the slide for ``frame``; the frame must lie on the stride grid."""

        if not self.is_slide_frame(frame):
            raise ValueError(f"frame {frame} is not on the slide grid")
        return (frame - self.anchor_frame) // self.stride + 1

    def is_slide_frame(self, frame: int) -> bool:
        return frame >= self.anchor_frame and (frame - self.anchor_frame) % self.stride == 0

    def slides_in(self, lo: int, hi: int) -> range:
        """Slides whose frames fall inside the half-open frame range ``[lo, hi)``."""

        first_frame = max(lo, self.anchor_frame)
        offset = (first_frame - self.anchor_frame) % self.stride
        if offset:
            first_frame += self.stride - offset
        if first_frame >= hi:
            return range(0)
        last_frame = hi - 1
        last_frame -= (last_frame - self.anchor_frame) % self.stride
        return range(self.slide_of(first_frame), self.slide_of(last_frame) + 1)

    def frame_chain(self, from_slide: int, to_slide: int, step: int = 1) -> List[int]:
        """
        Return the raw frames walked between two slides, endpoints included.

        The chain runs forward or backward depending on the slide order and
        advances ``step`` frames at a time; ``step`` must divide the stride.
        """

        if step < 1 or self.stride % step != 0:
            raise ValueError(f"step {step} must be >= 1 and divide stride {self.stride}")
        start = self.frame_of(from_slide)
        end = self.frame_of(to_slide)
        if start == end:
            return [start]
        direction = step if end > start else -step
        return list(range(start, end + direction, direction))


@dataclass(frozen=True, slots=True)
class ArtifactLayout:
    """Resolves the ``in/``, ``interp/`` and ``out/`` paths of a workspace."""

    root: Path
    input_dir: str = "in"
    interp_dir: str = "interp"
    out_dir: str = "out"
    extension: str = "png"

    @property
    def input_path(self) -> Path:
        return self.root / self.input_dir

    @property
    def interp_path(self) -> Path:
        return self.root / self.interp_dir

    @property
    def out_path(self) -> Path:
        return self.root / self.out_dir

    def raw_frame(self, frame: int) -> Path:
        return self.input_path / f"{format_index(frame)}.{self.extension}"

    def output(self, slide: int) -> Path:
        return self.out_path / f"{format_index(slide)}.{self.extension}"

    def interp(self, slide: int, suffix: str = "") -> Path:
        """Intermediate artifact for ``slide``; suffix is ``""``, ``"f"``, ``"b"`` or ``"m"``."""

        tail = f"-{suffix}" if suffix else ""
        return self.interp_path / f"{format_index(slide)}{tail}.{self.extension}"

    def blank_mask(self) -> Path:
        return self.interp_path / f"blank.{self.extension}"

    def raw_pattern(self) -> str:
        """printf-style input pattern understood by ffmpeg's image2 demuxer."""

        return str(self.input_path / f"%0{INDEX_WIDTH}d.{self.extension}")

    def count_raw_frames(self) -> int:
        """Number of consecutive raw frames starting at ``000001``."""

        count = 0
        while self.raw_frame(count + 1).exists():
            count += 1
        return count

    def ensure_dirs(self) -> None:
        self.interp_path.mkdir(parents=True, exist_ok=True)
        self.out_path.mkdir(parents=True, exist_ok=True)
