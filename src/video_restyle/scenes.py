"""Shot-cut detection and the scene partition of the frame range."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Iterable, List, Optional, Sequence

from src.datatypes import ScenesConfig
from src.video_restyle.filtergraph import Filter
from src.video_restyle.indexing import ArtifactLayout
from src.video_restyle.tools import ToolRunner

__all__ = [
    "Scene",
    "SceneSegmenter",
    "load_cached_cuts",
    "normalize_cuts",
    "parse_showinfo_cuts",
    "scene_ranges",
    "store_cached_cuts",
]

logger = logging.getLogger(__name__)

_SCENE_CACHE_SCHEMA: Final[int] = 1
_PTS_RE: Final[re.Pattern[str]] = re.compile(r"\bpts:\s*(\d+)")
_DETECTION_FRAMERATE: Final[int] = 25


@dataclass(frozen=True, slots=True)
class Scene:
    """Half-open raw frame range ``[lo, hi)`` without a shot cut inside."""

    index: int
    lo: int
    hi: int

    @property
    def frame_count(self) -> int:
        return self.hi - self.lo


def normalize_cuts(cuts: Iterable[int], frame_count: int, *, min_frames: int = 1) -> List[int]:
    """
    Return a strictly increasing cut list starting at ``1`` and ending at ``frame_count + 1``.

    Cuts outside ``(1, frame_count]`` are dropped. A scene shorter than
    ``min_frames`` loses its end cut and so joins the scene that follows it;
    a short final scene instead joins the one before it.
    """

    if frame_count < 1:
        raise ValueError("frame_count must be >= 1")
    end = frame_count + 1
    inner = sorted({int(cut) for cut in cuts if 1 < int(cut) < end})
    bounds = [1, *inner, end]
    if min_frames <= 1:
        return bounds
    merged = [bounds[0]]
    for cut in bounds[1:-1]:
        if cut - merged[-1] >= min_frames:
            merged.append(cut)
    if len(merged) > 1 and end - merged[-1] < min_frames:
        merged.pop()
    merged.append(end)
    return merged


def scene_ranges(cuts: Sequence[int]) -> List[Scene]:
    """Pair consecutive cut points into scenes."""

    if len(cuts) < 2:
        raise ValueError("a cut list needs at least a start and an end")
    scenes: List[Scene] = []
    for position, (lo, hi) in enumerate(zip(cuts, cuts[1:])):
        if hi <= lo:
            raise ValueError(f"cut list is not strictly increasing at {lo} -> {hi}")
        scenes.append(Scene(index=position, lo=lo, hi=hi))
    return scenes


def parse_showinfo_cuts(stderr: str) -> List[int]:
    """
    Extract 1-based cut frames from ``select=gt(scene,T),showinfo`` output.

    With a fixed input frame rate, each selected frame's ``pts`` equals its
    0-based position in the image sequence.
    """

    cuts: set[int] = set()
    for line in stderr.splitlines():
        if "showinfo" not in line or "pts:" not in line:
            continue
        match = _PTS_RE.search(line)
        if match:
            cuts.add(int(match.group(1)) + 1)
    return sorted(cuts)


def load_cached_cuts(
    path: Path,
    frame_count: int,
    *,
    threshold: Optional[float] = None,
    min_frames: Optional[int] = None,
) -> Optional[List[int]]:
    """
    Return cached cuts when the cache exists and was built for the same inputs.

    A recorded ``threshold`` or ``min_frames`` that differs from the one given
    counts as a miss. Plain-list caches carry no settings and are only checked
    against ``frame_count``.
    """

    if not path.exists():
        return None
    try:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable scene cache %s: %s", path, exc)
        return None
    if isinstance(payload, dict):
        cuts = payload.get("cuts")
        if payload.get("frame_count") not in (None, frame_count):
            logger.info("Scene cache %s was built for a different frame count; rescanning", path)
            return None
        settings = {"threshold": threshold, "min_frames": min_frames}
        for key, expected in settings.items():
            if expected is not None and key in payload and payload[key] != expected:
                logger.info("Scene cache %s was built with %s=%s; rescanning", path, key, payload[key])
                return None
    else:
        cuts = payload
    if not isinstance(cuts, list) or not all(isinstance(cut, int) for cut in cuts):
        logger.warning("Ignoring malformed scene cache %s", path)
        return None
    if not cuts or cuts[0] != 1 or cuts[-1] != frame_count + 1:
        logger.info("Scene cache %s does not cover 1..%d; rescanning", path, frame_count)
        return None
    if any(later <= earlier for earlier, later in zip(cuts, cuts[1:])):
        logger.warning("Ignoring non-monotonic scene cache %s", path)
        return None
    return list(cuts)


def store_cached_cuts(
    path: Path,
    cuts: Sequence[int],
    frame_count: int,
    *,
    threshold: Optional[float] = None,
    min_frames: Optional[int] = None,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload: dict[str, Any] = {"schema": _SCENE_CACHE_SCHEMA, "frame_count": frame_count}
    if threshold is not None:
        payload["threshold"] = threshold
    if min_frames is not None:
        payload["min_frames"] = min_frames
    payload["cuts"] = list(cuts)
    path.write_text(json.dumps(payload), encoding="utf-8")


class SceneSegmenter:
    """Partitions ``[1, N]`` into independently scheduled scenes."""

    def __init__(self, cfg: ScenesConfig, layout: ArtifactLayout, tools: ToolRunner) -> None:
        self.cfg = cfg
        self.layout = layout
        self.tools = tools

    @property
    def cache_path(self) -> Path:
        return self.layout.interp_path / self.cfg.cache_filename

    async def detect_cuts(self) -> List[int]:
        """Run ffmpeg's scene-change score over the raw frames."""

        select = Filter.of("select", f"gt(scene,{self.cfg.threshold})").render()
        argv = [
            self.tools.cfg.ffmpeg,
            "-hide_banner",
            "-framerate",
            str(_DETECTION_FRAMERATE),
            "-i",
            self.layout.raw_pattern(),
            "-vf",
            f"{select},{Filter.of('showinfo').render()}",
            "-f",
            "null",
            "-",
        ]
        completed = await self.tools.run(argv)
        return parse_showinfo_cuts(completed.stderr)

    async def cuts(self, frame_count: int, *, rescan: bool = False) -> List[int]:
        """Cut list for ``frame_count`` frames, cached in the interp directory."""

        if not self.cfg.enable:
            return [1, frame_count + 1]
        if not rescan:
            cached = load_cached_cuts(
                self.cache_path,
                frame_count,
                threshold=self.cfg.threshold,
                min_frames=self.cfg.min_frames,
            )
            if cached is not None:
                logger.info("Loaded %d scene(s) from %s", len(cached) - 1, self.cache_path)
                return cached
        raw_cuts = await self.detect_cuts()
        cuts = normalize_cuts(raw_cuts, frame_count, min_frames=self.cfg.min_frames)
        store_cached_cuts(
            self.cache_path,
            cuts,
            frame_count,
            threshold=self.cfg.threshold,
            min_frames=self.cfg.min_frames,
        )
        logger.info("Detected %d scene(s); cached at %s", len(cuts) - 1, self.cache_path)
        return cuts

    async def scenes(self, frame_count: int, *, rescan: bool = False) -> List[Scene]:
        return scene_ranges(await self.cuts(frame_count, rescan=rescan))
