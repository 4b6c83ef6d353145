"""Change masks and masked compositing of motion-warped predictions.

The numeric constants below are fixed for visual parity with earlier renders;
only the gain is user-configurable.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final, Optional, Sequence

from src.video_restyle.filtergraph import Filter, FilterGraph
from src.video_restyle.tools import ToolRunner

__all__ = [
    "MASK_DILATE_PASSES",
    "MASK_NOISE_FLOOR",
    "MASK_UNSHARP",
    "MaskBuilder",
    "blank_mask_graph",
    "change_mask_graph",
    "composite_graph",
]

logger = logging.getLogger(__name__)

MASK_NOISE_FLOOR: Final[int] = 2
"""Luma levels subtracted from the accumulated difference before amplification."""

MASK_DILATE_PASSES: Final[int] = 6
"""Number of 3x3 local-maximum passes applied to the amplified mask."""

MASK_UNSHARP: Final[tuple[int, int, float]] = (5, 5, 1.0)
"""``unsharp`` luma matrix width, height and amount."""

MASK_MAX: Final[int] = 255


def _gray() -> Filter:
    return Filter.of("format", "gray")


def _rgba() -> Filter:
    return Filter.of("format", "rgba")


def change_mask_graph(frame_count: int, gain: float) -> tuple[FilterGraph, str]:
    """
    Build the differencing graph for ``frame_count`` consecutive raw frames.

    Inputs ``0..frame_count-1`` are the span in temporal order. Each adjacent
    pair is differenced, the differences are summed, then amplified, dilated
    and sharpened into one gray mask.
    """

    if frame_count < 2:
        raise ValueError("a change mask needs at least two frames")
    graph = FilterGraph(input_count=frame_count)

    # Interior frames take part in two differences, so they are split.
    heads: list[str] = []
    tails: list[str] = []
    for index in range(frame_count):
        uses = 1 if index in (0, frame_count - 1) else 2
        if uses == 1:
            (label,) = graph.chain([graph.stream(index)], [_gray()], graph.label("g"))
            if index == 0:
                heads.append(label)
            else:
                tails.append(label)
        else:
            first, second = graph.chain(
                [graph.stream(index)],
                [_gray(), Filter.of("split", 2)],
                [graph.label("g"), graph.label("g")],
            )
            tails.append(first)
            heads.append(second)

    differences: list[str] = []
    for head, tail in zip(heads, tails):
        (diff,) = graph.chain(
            [head, tail], [Filter.of("blend", all_mode="difference")], graph.label("d")
        )
        differences.append(diff)

    total = differences[0]
    for diff in differences[1:]:
        (total,) = graph.chain(
            [total, diff], [Filter.of("blend", all_mode="addition")], graph.label("s")
        )

    width, height, amount = MASK_UNSHARP
    stages = [
        Filter.of("lut", c0=f"clip((val-{MASK_NOISE_FLOOR})*{gain},0,{MASK_MAX})"),
        *[Filter.of("dilation") for _ in range(MASK_DILATE_PASSES)],
        Filter.of("unsharp", width, height, amount),
    ]
    graph.chain([total], stages, "mask")
    return graph, "mask"


def blank_mask_graph() -> tuple[FilterGraph, str]:
    """A uniformly maximal mask the size of the single reference input."""

    graph = FilterGraph(input_count=1)
    graph.chain([graph.stream(0)], [_gray(), Filter.of("lut", c0=MASK_MAX)], "mask")
    return graph, "mask"


def composite_graph(two_sided: bool) -> tuple[FilterGraph, str]:
    """
    Merge warped predictions under a change mask.

    Inputs: ``0`` forward prediction, ``1`` mask, ``2`` raw frame and, when
    ``two_sided``, ``3`` backward prediction. Where the mask is zero the
    forward prediction passes through untouched; where it is maximal the raw
    frame replaces any warp so the generative step repaints freely. In
    between, the backward prediction is blended in at half the mask weight.
    """

    graph = FilterGraph(input_count=4 if two_sided else 3)
    if two_sided:
        mask_half, mask_full = graph.chain(
            [graph.stream(1)], [_gray(), Filter.of("split", 2)], ["mh", "mf"]
        )
        graph.chain([mask_half], [Filter.of("lut", c0="val/2")], "mhalf")
        graph.chain([graph.stream(3)], [_rgba()], "bwd")
        graph.chain(["bwd", "mhalf"], [Filter.of("alphamerge")], "bwda")
        graph.chain([graph.stream(0)], [_rgba()], "fwd")
        graph.chain(["fwd", "bwda"], [Filter.of("overlay", format="auto")], "pred")
    else:
        graph.chain([graph.stream(1)], [_gray()], "mf")
        graph.chain([graph.stream(0)], [_rgba()], "pred")
    graph.chain([graph.stream(2)], [_rgba()], "raw")
    graph.chain(["raw", "mf"], [Filter.of("alphamerge")], "rawa")
    graph.chain(
        ["pred", "rawa"],
        [Filter.of("overlay", format="auto"), Filter.of("format", "rgb24")],
        "out",
    )
    return graph, "out"


class MaskBuilder:
    """Runs the mask and composite graphs through ffmpeg."""

    def __init__(self, tools: ToolRunner, gain: float) -> None:
        self.tools = tools
        self.gain = gain

    async def change_mask(self, span: Sequence[Path], output: Path) -> Path:
        """Mask of inter-frame change over ``span`` (temporal order)."""

        graph, final = change_mask_graph(len(span), self.gain)
        return await self.tools.ffmpeg(list(span), graph, final, output)

    async def blank_mask(self, reference: Path, output: Path) -> Path:
        if output.exists():
            return output
        graph, final = blank_mask_graph()
        return await self.tools.ffmpeg([reference], graph, final, output)

    async def composite(
        self,
        forward: Path,
        mask: Path,
        raw: Path,
        output: Path,
        backward: Optional[Path] = None,
    ) -> Path:
        graph, final = composite_graph(backward is not None)
        inputs = [forward, mask, raw]
        if backward is not None:
            inputs.append(backward)
        return await self.tools.ffmpeg(inputs, graph, final, output)
