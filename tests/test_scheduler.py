from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Set

import pytest

from src.datatypes import AppConfig, BoundaryMode, FramesConfig, SchedulerConfig
from src.video_restyle.errors import ExternalToolFailure, SceneFailedError
from src.video_restyle.indexing import ArtifactLayout, SlideSpace
from src.video_restyle.jobs import PromptTemplate, RestyleJob
from src.video_restyle.scenes import Scene
from src.video_restyle.scheduler import (
    DependencyNode,
    Edge,
    FrameScheduler,
    NodeKind,
    describe_plan,
    drain,
    plan_for_scene,
    plan_scene,
    snap_midpoint,
    subdivide,
)
from tests.helpers.restyle_env import EXAMPLE_TEMPLATE, FakeToolRunner


@pytest.mark.parametrize(
    ("lo", "hi", "stride", "expected"),
    [
        (0, 8, 2, 4),
        (0, 6, 2, 4),
        (1, 3, 1, 2),
        (1, 2, 1, None),
        (0, 2, 2, None),
        (0, 21, 1, 11),
    ],
)
def test_snap_midpoint(lo: int, hi: int, stride: int, expected: int | None) -> None:
    assert snap_midpoint(lo, hi, stride) == expected


def test_subdivide_visits_parents_first_on_the_stride_grid() -> None:
    edges = subdivide(0, 8, 2)
    assert edges == [Edge(4, 0, 8), Edge(2, 0, 4), Edge(6, 4, 8)]
    assert all(edge.node % 2 == 0 for edge in edges)
    assert subdivide(3, 4) == []


def test_subdivide_fills_every_interior_point_once() -> None:
    edges = subdivide(10, 27)
    assert sorted(edge.node for edge in edges) == list(range(11, 27))
    position = {edge.node: i for i, edge in enumerate(edges)}
    for edge in edges:
        assert edge.lower < edge.node < edge.upper
        for bound in (edge.lower, edge.upper):
            if bound in position:
                assert position[bound] < position[edge.node]


def test_small_scene_plan() -> None:
    plan = plan_scene(1, 5)
    assert plan.anchor == 3
    assert sorted(plan.nodes) == [1, 2, 3, 4, 5]
    assert plan.nodes[3].kind is NodeKind.ANCHOR
    assert plan.nodes[5] == DependencyNode(5, NodeKind.BOUNDARY, after=(3,))
    assert plan.nodes[1] == DependencyNode(1, NodeKind.BOUNDARY, after=(3,))
    assert plan.nodes[4] == DependencyNode(4, NodeKind.INTERIOR, lower=3, upper=5)
    assert plan.nodes[2] == DependencyNode(2, NodeKind.INTERIOR, lower=1, upper=3)


@pytest.mark.parametrize(("first", "last"), [(1, 1), (1, 2), (4, 9), (1, 100)])
def test_plan_covers_each_slide_exactly_once(first: int, last: int) -> None:
    plan = plan_scene(first, last, group_size=8)
    assert sorted(plan.nodes) == list(range(first, last + 1))
    assert [n.slide for n in plan.nodes.values() if n.kind is NodeKind.ANCHOR] == [plan.anchor]
    for node in plan.nodes.values():
        for prerequisite in node.prerequisites:
            assert prerequisite in plan.nodes


def test_group_boundaries_resolve_in_order() -> None:
    plan = plan_scene(1, 20, group_size=4)
    assert plan.anchor == 11
    boundaries = {
        slide: node.after for slide, node in plan.nodes.items() if node.kind is NodeKind.BOUNDARY
    }
    assert boundaries == {
        15: (11,),
        19: (15,),
        20: (19,),
        7: (11,),
        3: (7,),
        1: (3,),
    }
    for node in plan.nodes.values():
        if node.kind is NodeKind.INTERIOR:
            assert node.upper - node.lower <= 4
    assert max(plan.depth(slide) for slide in plan.nodes) <= 3 + 3


def test_propagate_mode_warps_boundaries_from_their_predecessor() -> None:
    plan = plan_scene(1, 20, group_size=4, boundary_mode=BoundaryMode.PROPAGATE)
    assert plan.nodes[15].lower == 11 and plan.nodes[15].upper is None
    assert plan.nodes[7].upper == 11 and plan.nodes[7].lower is None
    assert plan.nodes[20].lower == 19
    direct = [slide for slide, node in plan.nodes.items() if node.is_direct]
    assert direct == [11]


def test_plan_scene_rejects_bad_arguments() -> None:
    with pytest.raises(ValueError):
        plan_scene(5, 4)
    with pytest.raises(ValueError):
        plan_scene(1, 5, group_size=1)


def test_plan_for_scene_maps_frames_to_slides() -> None:
    space = SlideSpace(stride=4)
    plan = plan_for_scene(Scene(1, 6, 20), space, SchedulerConfig())
    assert plan is not None
    assert (plan.first, plan.last) == (3, 5)
    assert plan_for_scene(Scene(2, 6, 9), space, SchedulerConfig()) is None


def test_describe_plan_orders_by_depth() -> None:
    rows = describe_plan(plan_scene(1, 5))
    assert rows[0] == {
        "slide": 3,
        "kind": "anchor",
        "lower": None,
        "upper": None,
        "after": [],
        "depth": 0,
    }
    depths = [row["depth"] for row in rows]
    assert depths == sorted(depths)


def test_drain_starts_nodes_only_after_their_prerequisites() -> None:
    plan = plan_scene(1, 40, group_size=8)
    done: Set[int] = set()
    started: List[int] = []

    async def execute(node: DependencyNode) -> None:
        assert set(node.prerequisites) <= done
        started.append(node.slide)
        await asyncio.sleep(0)
        done.add(node.slide)

    order = asyncio.run(drain(plan, execute, workers=4))
    assert sorted(order) == list(range(1, 41))
    assert started[0] == plan.anchor


def test_drain_bounds_concurrency() -> None:
    plan = plan_scene(1, 64, group_size=16)
    active = [0]
    peak = [0]

    async def execute(node: DependencyNode) -> None:
        active[0] += 1
        peak[0] = max(peak[0], active[0])
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        active[0] -= 1

    asyncio.run(drain(plan, execute, workers=3))
    assert peak[0] == 3


def test_drain_fails_the_scene_on_first_error() -> None:
    plan = plan_scene(1, 5)
    started: List[int] = []

    async def execute(node: DependencyNode) -> None:
        started.append(node.slide)
        if node.slide == 5:
            raise ExternalToolFailure(["motion-transfer"], 1, "boom")

    with pytest.raises(SceneFailedError) as excinfo:
        asyncio.run(drain(plan, execute, workers=2, scene_index=7))
    assert excinfo.value.scene_index == 7
    assert excinfo.value.slide == 5
    assert isinstance(excinfo.value.cause, ExternalToolFailure)
    assert 4 not in started


class StubPool:
    """Pretends every job renders instantly."""

    def __init__(self) -> None:
        self.jobs: List[RestyleJob] = []

    async def run(self, job: RestyleJob) -> Path:
        self.jobs.append(job)
        job.output.parent.mkdir(parents=True, exist_ok=True)
        job.output.write_bytes(b"styled")
        return job.output


def _scheduler(tmp_path: Path, tools: FakeToolRunner, pool: StubPool, **kwargs: object) -> FrameScheduler:
    cfg = AppConfig(frames=FramesConfig(stride=2))
    layout = ArtifactLayout(root=tmp_path)
    template = PromptTemplate.load(EXAMPLE_TEMPLATE)
    return FrameScheduler(cfg, layout, tools, pool, template=template, **kwargs)  # type: ignore[arg-type]


def test_frame_scheduler_renders_every_slide_of_a_scene(tmp_path: Path) -> None:
    tools = FakeToolRunner()
    pool = StubPool()
    notified: List[int] = []
    scheduler = _scheduler(tmp_path, tools, pool, on_slide=lambda slide, skipped: notified.append(slide))

    order = asyncio.run(scheduler.run_scene(Scene(0, 1, 10)))

    assert sorted(order) == [1, 2, 3, 4, 5]
    assert sorted(notified) == [1, 2, 3, 4, 5]
    assert [job.slide for job in pool.jobs][0] == 3
    for slide in range(1, 6):
        assert (tmp_path / "out" / f"{slide:06d}.png").exists()

    jobs = {job.slide: job for job in pool.jobs}
    blank = tmp_path / "interp" / "blank.png"
    for direct in (1, 3, 5):
        assert jobs[direct].mask == blank
        assert jobs[direct].image == tmp_path / "in" / f"{2 * direct - 1:06d}.png"
    assert jobs[4].image == tmp_path / "interp" / "000004.png"
    assert jobs[4].mask == tmp_path / "interp" / "000004-m.png"


def test_interior_slide_warps_along_raw_frame_chain(tmp_path: Path) -> None:
    tools = FakeToolRunner()
    pool = StubPool()
    scheduler = _scheduler(tmp_path, tools, pool)
    node = DependencyNode(4, NodeKind.INTERIOR, lower=3, upper=5)

    asyncio.run(scheduler.render(node))

    frame = lambda index: str(tmp_path / "in" / f"{index:06d}.png")  # noqa: E731
    from_upper, from_lower = sorted(tools.warps(), key=lambda call: call[call.index("-o") + 1])
    assert from_upper[from_upper.index("-o") + 1].endswith("000004-b.png")
    assert from_upper[2:5] == [frame(9), frame(8), frame(7)]
    assert from_upper[from_upper.index("-i") + 1] == str(tmp_path / "out" / "000005.png")
    assert from_lower[from_lower.index("-o") + 1].endswith("000004-f.png")
    assert from_lower[2:5] == [frame(5), frame(6), frame(7)]
    assert from_lower[from_lower.index("-i") + 1] == str(tmp_path / "out" / "000003.png")

    mask_call = next(call for call in tools.calls if call[-1].endswith("000004-m.png"))
    inputs = [mask_call[i + 1] for i, part in enumerate(mask_call) if part == "-i"]
    assert inputs == [frame(i) for i in range(5, 10)]

    composite = next(call for call in tools.calls if call[-1].endswith("interp/000004.png"))
    inputs = [composite[i + 1] for i, part in enumerate(composite) if part == "-i"]
    assert [Path(p).name for p in inputs] == [
        "000004-f.png",
        "000004-m.png",
        "000007.png",
        "000004-b.png",
    ]
    assert [job.slide for job in pool.jobs] == [4]


def test_one_sided_node_composites_single_warp(tmp_path: Path) -> None:
    tools = FakeToolRunner()
    pool = StubPool()
    scheduler = _scheduler(tmp_path, tools, pool)

    asyncio.run(scheduler.render(DependencyNode(2, NodeKind.BOUNDARY, upper=3)))

    (warp,) = tools.warps()
    assert warp[warp.index("-o") + 1].endswith("000002-b.png")
    composite = next(call for call in tools.calls if call[-1].endswith("interp/000002.png"))
    inputs = [composite[i + 1] for i, part in enumerate(composite) if part == "-i"]
    assert [Path(p).name for p in inputs] == ["000002-b.png", "000002-m.png", "000003.png"]


def test_existing_output_is_skipped(tmp_path: Path) -> None:
    tools = FakeToolRunner()
    pool = StubPool()
    skipped: List[bool] = []
    scheduler = _scheduler(tmp_path, tools, pool, on_slide=lambda slide, flag: skipped.append(flag))
    existing = tmp_path / "out" / "000004.png"
    existing.parent.mkdir(parents=True)
    existing.write_bytes(b"done")

    asyncio.run(scheduler.render(DependencyNode(4, NodeKind.INTERIOR, lower=3, upper=5)))

    assert tools.calls == []
    assert pool.jobs == []
    assert skipped == [True]


def test_anchor_template_is_used_for_direct_slides(tmp_path: Path) -> None:
    tools = FakeToolRunner()
    pool = StubPool()
    anchor_template = PromptTemplate.load(EXAMPLE_TEMPLATE)
    scheduler = _scheduler(tmp_path, tools, pool, anchor_template=anchor_template)

    asyncio.run(scheduler.render(DependencyNode(3, NodeKind.ANCHOR)))
    asyncio.run(scheduler.render(DependencyNode(4, NodeKind.INTERIOR, lower=3, upper=5)))

    assert pool.jobs[0].template is anchor_template
    assert pool.jobs[1].template is scheduler.template
    assert pool.jobs[1].template is not anchor_template
