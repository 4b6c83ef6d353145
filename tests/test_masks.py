from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Mapping, Tuple

import pytest

from src.video_restyle.filtergraph import FilterGraph
from src.video_restyle.masks import (
    MASK_DILATE_PASSES,
    MaskBuilder,
    blank_mask_graph,
    change_mask_graph,
    composite_graph,
)
from tests.helpers.restyle_env import FakeToolRunner

Pixel = Tuple[float, float]
"""(value, alpha) of a single pixel."""


def _apply(name: str, rendered: str, current: List[Pixel]) -> List[Pixel]:
    if name == "format":
        return current
    if name == "split":
        count = int(rendered.split("=", 1)[1])
        return [current[0]] * count
    if name == "lut":
        expression = rendered.split("c0=", 1)[1]
        value, alpha = current[0]
        if expression == "val/2":
            return [(value / 2, alpha)]
        return [(float(expression), alpha)]
    if name == "alphamerge":
        (value, _), (mask, _) = current
        return [(value, mask / 255.0)]
    if name == "overlay":
        (base, _), (top, top_alpha) = current
        return [(base * (1 - top_alpha) + top * top_alpha, 1.0)]
    raise AssertionError(f"unexpected filter {name}")


def _evaluate(graph: FilterGraph, final: str, inputs: Mapping[int, float]) -> float:
    """Evaluate a compositing graph on one pixel per input."""

    labels: Dict[str, Pixel] = {}
    for stage in graph.describe():
        current: List[Pixel] = []
        for label in stage["inputs"]:  # type: ignore[union-attr]
            if label.endswith(":v"):
                current.append((inputs[int(label.split(":")[0])], 1.0))
            else:
                current.append(labels.pop(label))
        for name, rendered in zip(stage["filters"], stage["rendered"]):  # type: ignore[arg-type]
            current = _apply(name, rendered, current)
        for label, pixel in zip(stage["outputs"], current):  # type: ignore[arg-type]
            labels[label] = pixel
    return labels[final][0]


@pytest.mark.parametrize("two_sided", [True, False])
def test_zero_mask_passes_forward_prediction_through(two_sided: bool) -> None:
    graph, final = composite_graph(two_sided)
    pixels = {0: 40.0, 1: 0.0, 2: 180.0, 3: 220.0}
    assert _evaluate(graph, final, pixels) == pytest.approx(40.0)


@pytest.mark.parametrize("two_sided", [True, False])
def test_full_mask_replaces_warps_with_raw_frame(two_sided: bool) -> None:
    graph, final = composite_graph(two_sided)
    pixels = {0: 40.0, 1: 255.0, 2: 180.0, 3: 220.0}
    assert _evaluate(graph, final, pixels) == pytest.approx(180.0)


def test_partial_mask_blends_backward_prediction() -> None:
    graph, final = composite_graph(True)
    pixels = {0: 0.0, 1: 102.0, 2: 0.0, 3: 255.0}
    # Backward weight is half the mask; the raw frame (0) then covers 40%.
    expected = (255.0 * (51.0 / 255.0)) * (1 - 102.0 / 255.0)
    assert _evaluate(graph, final, pixels) == pytest.approx(expected)


def test_composite_graph_reads_every_input() -> None:
    for two_sided, count in ((True, 4), (False, 3)):
        graph, final = composite_graph(two_sided)
        rendered = graph.render(final)
        for index in range(count):
            assert f"[{index}:v]" in rendered


def test_change_mask_graph_differences_each_adjacent_pair() -> None:
    graph, final = change_mask_graph(4, gain=4.0)
    stages = graph.describe()
    names = [name for stage in stages for name in stage["filters"]]  # type: ignore[union-attr]
    assert names.count("blend") == 3 + 2  # three differences, two additions
    assert names.count("dilation") == MASK_DILATE_PASSES
    rendered = graph.render(final)
    assert "blend=all_mode=difference" in rendered
    assert "blend=all_mode=addition" in rendered
    assert "lut=c0='clip((val-2)*4.0,0,255)'" in rendered
    assert rendered.endswith("unsharp=5:5:1.0[mask]")


def test_change_mask_needs_two_frames() -> None:
    with pytest.raises(ValueError):
        change_mask_graph(1, gain=4.0)


def test_blank_mask_is_uniformly_maximal() -> None:
    graph, final = blank_mask_graph()
    assert graph.render(final) == "[0:v]format=gray,lut=c0=255[mask]"


def test_mask_builder_invokes_ffmpeg_with_span(tmp_path: Path) -> None:
    tools = FakeToolRunner()
    builder = MaskBuilder(tools, gain=2.5)
    span = [tmp_path / f"{index:06d}.png" for index in range(1, 4)]
    out = tmp_path / "interp" / "000002-m.png"

    asyncio.run(builder.change_mask(span, out))

    (call,) = tools.calls
    assert call[0] == "ffmpeg"
    assert [call[i + 1] for i, part in enumerate(call) if part == "-i"] == [str(p) for p in span]
    assert "(val-2)*2.5" in call[call.index("-filter_complex") + 1]
    assert out.exists()


def test_blank_mask_is_generated_once(tmp_path: Path) -> None:
    tools = FakeToolRunner()
    builder = MaskBuilder(tools, gain=4.0)
    reference = tmp_path / "in" / "000001.png"
    out = tmp_path / "interp" / "blank.png"

    asyncio.run(builder.blank_mask(reference, out))
    asyncio.run(builder.blank_mask(reference, out))

    assert len(tools.calls) == 1
