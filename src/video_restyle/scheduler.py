"""Binary-subdivision dependency scheduling of slide restyles.

Every scene is planned as a small DAG over slide indices: one anchor at the
scene midpoint, a chain of group boundaries walking outward from it, and the
interior slides between consecutive boundaries found by repeatedly halving
the interval. A node runs only once all of its prerequisites have produced
their output, so each interior slide is derived from its two temporally
nearest styled neighbours and the dependency depth stays logarithmic.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from src.datatypes import AppConfig, BoundaryMode, SchedulerConfig
from src.video_restyle.backends import BackendPool
from src.video_restyle.errors import SceneFailedError
from src.video_restyle.indexing import ArtifactLayout, SlideSpace
from src.video_restyle.jobs import PromptTemplate, RestyleJob, describe_job
from src.video_restyle.masks import MaskBuilder
from src.video_restyle.scenes import Scene
from src.video_restyle.tools import ToolRunner

__all__ = [
    "DependencyNode",
    "Edge",
    "FrameScheduler",
    "NodeKind",
    "ScenePlan",
    "describe_plan",
    "drain",
    "plan_for_scene",
    "plan_scene",
    "snap_midpoint",
    "subdivide",
]

logger = logging.getLogger(__name__)


class NodeKind(str, Enum):
    ANCHOR = "anchor"
    BOUNDARY = "boundary"
    INTERIOR = "interior"


@dataclass(frozen=True, slots=True)
class Edge:
    """``node`` is derived from the already-resolved ``lower`` and ``upper``."""

    node: int
    lower: int
    upper: int


@dataclass(slots=True)
class DependencyNode:
    """One slide to produce, with the slides it warps from and waits on."""

    slide: int
    kind: NodeKind
    lower: Optional[int] = None
    upper: Optional[int] = None
    after: Tuple[int, ...] = ()

    @property
    def bounds(self) -> Tuple[int, ...]:
        return tuple(bound for bound in (self.lower, self.upper) if bound is not None)

    @property
    def prerequisites(self) -> Tuple[int, ...]:
        seen: List[int] = []
        for slide in (*self.bounds, *self.after):
            if slide not in seen:
                seen.append(slide)
        return tuple(seen)

    @property
    def is_direct(self) -> bool:
        """True when the slide is restyled straight from its raw frame."""

        return not self.bounds


def snap_midpoint(lo: int, hi: int, stride: int = 1) -> Optional[int]:
    """
    Midpoint of ``(lo, hi)`` on the grid ``lo + k * stride`` (ties round up).

    Returns ``None`` once the interval has no grid point strictly inside it.
    """

    if stride < 1:
        raise ValueError("stride must be >= 1")
    steps = (hi - lo) // stride
    mid = lo + ((steps + 1) // 2) * stride
    if mid <= lo or mid >= hi:
        return None
    return mid


def subdivide(lo: int, hi: int, stride: int = 1) -> List[Edge]:
    """
    Recursively halve ``(lo, hi)``, parents before children, lower half first.

    ``subdivide(0, 8, 2)`` yields ``4 <- (0, 8)``, ``2 <- (0, 4)`` and
    ``6 <- (4, 8)``.
    """

    edges: List[Edge] = []
    stack: List[Tuple[int, int]] = [(lo, hi)]
    while stack:
        left, right = stack.pop()
        mid = snap_midpoint(left, right, stride)
        if mid is None:
            continue
        edges.append(Edge(node=mid, lower=left, upper=right))
        stack.append((mid, right))
        stack.append((left, mid))
    return edges


def _boundary_walk(anchor: int, limit: int, group_size: int) -> List[int]:
    """Boundaries from ``anchor`` toward ``limit`` (inclusive), ``group_size`` apart."""

    direction = 1 if limit >= anchor else -1
    walk = [anchor]
    current = anchor
    while current != limit:
        step = current + direction * group_size
        if (direction > 0 and step > limit) or (direction < 0 and step < limit):
            step = limit
        walk.append(step)
        current = step
    return walk


@dataclass
class ScenePlan:
    """Dependency DAG for one scene, keyed by slide index."""

    first: int
    last: int
    anchor: int
    nodes: Dict[int, DependencyNode] = field(default_factory=dict)

    def add(self, node: DependencyNode) -> None:
        if node.slide in self.nodes:
            raise ValueError(f"slide {node.slide} planned twice")
        if not self.first <= node.slide <= self.last:
            raise ValueError(f"slide {node.slide} outside scene {self.first}..{self.last}")
        self.nodes[node.slide] = node

    def dependents(self) -> Dict[int, List[int]]:
        mapping: Dict[int, List[int]] = {slide: [] for slide in self.nodes}
        for node in self.nodes.values():
            for prerequisite in node.prerequisites:
                mapping[prerequisite].append(node.slide)
        return mapping

    def depth(self, slide: int) -> int:
        """Longest prerequisite chain below ``slide`` (direct slides have depth 0)."""

        memo: Dict[int, int] = {}

        def _depth(current: int) -> int:
            if current not in memo:
                prerequisites = self.nodes[current].prerequisites
                memo[current] = 1 + max((_depth(p) for p in prerequisites), default=-1)
            return memo[current]

        return _depth(slide)


def plan_scene(
    first: int,
    last: int,
    *,
    group_size: int = 1024,
    boundary_mode: BoundaryMode = BoundaryMode.ANCHOR,
) -> ScenePlan:
    """
    Plan slides ``first..last`` (inclusive).

    The anchor sits at the midpoint. Boundaries every ``group_size`` slides
    outward from it, plus the scene edges, each wait on the previous boundary
    so groups resolve strictly in order. With ``BoundaryMode.ANCHOR`` they are
    restyled directly; with ``BoundaryMode.PROPAGATE`` they are warped one-sided
    from that previous boundary. Slides between two boundaries come from
    :func:`subdivide`.
    """

    if last < first:
        raise ValueError(f"empty scene {first}..{last}")
    if group_size < 2:
        raise ValueError("group_size must be >= 2")
    anchor = snap_midpoint(first - 1, last + 1) or first
    plan = ScenePlan(first=first, last=last, anchor=anchor)
    plan.add(DependencyNode(slide=anchor, kind=NodeKind.ANCHOR))

    for limit in (last, first):
        walk = _boundary_walk(anchor, limit, group_size)
        for previous, current in zip(walk, walk[1:]):
            if boundary_mode is BoundaryMode.PROPAGATE:
                if current > previous:
                    node = DependencyNode(slide=current, kind=NodeKind.BOUNDARY, lower=previous)
                else:
                    node = DependencyNode(slide=current, kind=NodeKind.BOUNDARY, upper=previous)
            else:
                node = DependencyNode(slide=current, kind=NodeKind.BOUNDARY, after=(previous,))
            plan.add(node)
            lo, hi = sorted((previous, current))
            for edge in subdivide(lo, hi):
                plan.add(
                    DependencyNode(
                        slide=edge.node,
                        kind=NodeKind.INTERIOR,
                        lower=edge.lower,
                        upper=edge.upper,
                    )
                )
    return plan


def plan_for_scene(scene: Scene, space: SlideSpace, cfg: SchedulerConfig) -> ScenePlan | None:
    """Plan the slides of ``scene``, or ``None`` when no slide falls inside it."""

    slides = space.slides_in(scene.lo, scene.hi)
    if not slides:
        return None
    return plan_scene(
        slides[0],
        slides[-1],
        group_size=cfg.group_size,
        boundary_mode=cfg.boundary_mode,
    )


NodeExecutor = Callable[[DependencyNode], Awaitable[None]]


async def drain(
    plan: ScenePlan,
    execute: NodeExecutor,
    *,
    workers: int,
    scene_index: int = 0,
) -> List[int]:
    """
    Execute every node of ``plan`` once its prerequisites have resolved.

    At most ``workers`` nodes run at a time. The first failing node cancels
    the rest of the scene and is re-raised as :class:`SceneFailedError`.
    Returns slides in completion order.
    """

    if workers < 1:
        raise ValueError("workers must be >= 1")
    waiting: Dict[int, set[int]] = {
        slide: set(node.prerequisites) for slide, node in plan.nodes.items()
    }
    dependents = plan.dependents()
    ready: Deque[int] = deque(sorted(slide for slide, pending in waiting.items() if not pending))
    running: Dict[asyncio.Task[None], int] = {}
    resolved: List[int] = []

    try:
        while ready or running:
            while ready and len(running) < workers:
                slide = ready.popleft()
                task = asyncio.create_task(execute(plan.nodes[slide]), name=f"slide-{slide}")
                running[task] = slide
            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: running[t]):
                slide = running.pop(task)
                error = task.exception()
                if error is not None:
                    raise SceneFailedError(scene_index, slide, error) from error
                resolved.append(slide)
                for dependent in dependents[slide]:
                    pending = waiting[dependent]
                    pending.discard(slide)
                    if not pending:
                        ready.append(dependent)
    finally:
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    if len(resolved) != len(plan.nodes):
        unresolved = sorted(set(plan.nodes) - set(resolved))
        raise SceneFailedError(
            scene_index,
            unresolved[0] if unresolved else None,
            RuntimeError(f"unsatisfiable prerequisites for slides {unresolved}"),
        )
    return resolved


SlideCallback = Callable[[int, bool], None]


class FrameScheduler:
    """Plans and renders scenes against a backend pool."""

    def __init__(
        self,
        cfg: AppConfig,
        layout: ArtifactLayout,
        tools: ToolRunner,
        pool: BackendPool[RestyleJob, object],
        *,
        template: PromptTemplate,
        anchor_template: PromptTemplate | None = None,
        on_slide: SlideCallback | None = None,
    ) -> None:
        self.cfg = cfg
        self.layout = layout
        self.space = SlideSpace(stride=cfg.frames.stride, anchor_frame=cfg.frames.anchor_frame)
        self.tools = tools
        self.masks = MaskBuilder(tools, cfg.mask.gain)
        self.pool = pool
        self.template = template
        self.anchor_template = anchor_template or template
        self._on_slide = on_slide
        self._blank_lock = asyncio.Lock()

    def plan(self, scene: Scene) -> ScenePlan | None:
        return plan_for_scene(scene, self.space, self.cfg.scheduler)

    async def run_scene(self, scene: Scene) -> List[int]:
        plan = self.plan(scene)
        if plan is None:
            logger.info("Scene %d (frames %d-%d) holds no slides", scene.index, scene.lo, scene.hi - 1)
            return []
        logger.info(
            "Scene %d: frames %d-%d, slides %d-%d, anchor %d",
            scene.index,
            scene.lo,
            scene.hi - 1,
            plan.first,
            plan.last,
            plan.anchor,
        )
        return await drain(
            plan,
            self.render,
            workers=self.cfg.scheduler.node_workers,
            scene_index=scene.index,
        )

    def _raw(self, slide: int):
        return self.layout.raw_frame(self.space.frame_of(slide))

    def _chain(self, from_slide: int, to_slide: int):
        frames = self.space.frame_chain(from_slide, to_slide, self.cfg.tools.warp_step)
        return [self.layout.raw_frame(frame) for frame in frames]

    async def _blank_mask(self, reference):
        async with self._blank_lock:
            return await self.masks.blank_mask(reference, self.layout.blank_mask())

    async def render(self, node: DependencyNode) -> None:
        """Produce ``out/<slide>`` for ``node``; its prerequisites are already resolved."""

        output = self.layout.output(node.slide)
        if output.exists():
            logger.debug("Slide %d already rendered", node.slide)
            self._notify(node.slide, skipped=True)
            return
        raw = self._raw(node.slide)

        if node.is_direct:
            mask = await self._blank_mask(raw)
            job = RestyleJob(node.slide, self.anchor_template, raw, mask, output)
        else:
            job = await self._prepare_derived(node, raw, output)

        logger.info("Submitting %s [%s]", describe_job(job), node.kind.value)
        await self.pool.run(job)
        self._notify(node.slide, skipped=False)

    async def _prepare_derived(self, node: DependencyNode, raw, output) -> RestyleJob:
        slide = node.slide
        warps: List[Awaitable[object]] = []
        forward = backward = None
        if node.lower is not None:
            forward = self.layout.interp(slide, "f")
            warps.append(
                self.tools.motion_warp(
                    self._chain(node.lower, slide), self.layout.output(node.lower), forward
                )
            )
        if node.upper is not None:
            backward = self.layout.interp(slide, "b")
            warps.append(
                self.tools.motion_warp(
                    self._chain(node.upper, slide), self.layout.output(node.upper), backward
                )
            )
        span_start = node.lower if node.lower is not None else slide
        span_end = node.upper if node.upper is not None else slide
        mask = self.layout.interp(slide, "m")
        warps.append(self.masks.change_mask(self._chain(span_start, span_end), mask))
        await asyncio.gather(*warps)

        primary = forward if forward is not None else backward
        secondary = backward if forward is not None else None
        assert primary is not None
        composite = await self.masks.composite(
            primary, mask, raw, self.layout.interp(slide), backward=secondary
        )
        return RestyleJob(slide, self.template, composite, mask, output)

    def _notify(self, slide: int, *, skipped: bool) -> None:
        if self._on_slide is not None:
            self._on_slide(slide, skipped)


def describe_plan(plan: ScenePlan) -> List[Dict[str, object]]:
    """Rows describing each planned slide in dependency order."""

    rows: List[Dict[str, object]] = []
    for slide in sorted(plan.nodes, key=lambda s: (plan.depth(s), s)):
        node = plan.nodes[slide]
        rows.append(
            {
                "slide": slide,
                "kind": node.kind.value,
                "lower": node.lower,
                "upper": node.upper,
                "after": list(node.after),
                "depth": plan.depth(slide),
            }
        )
    return rows
