"""Run orchestration: configuration, scene partition and concurrent scene pipelines."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from rich.markup import escape

from src.config_loader import ConfigError, validate_config
from src.datatypes import AppConfig
from src.video_restyle.backends import BackendPool
from src.video_restyle.cli_runtime import (
    CLIAppError,
    CliOutputManager,
    CliOutputManagerProtocol,
)
from src.video_restyle.errors import ExternalToolFailure, NoLiveBackendsError, SceneFailedError
from src.video_restyle.indexing import ArtifactLayout, SlideSpace
from src.video_restyle.jobs import JobSubmitter, PromptTemplate, TemplateError
from src.video_restyle.net import DEFAULT_HTTP_TIMEOUT
from src.video_restyle.preflight import PreflightResult, prepare_preflight
from src.video_restyle.scenes import Scene, SceneSegmenter
from src.video_restyle.scheduler import FrameScheduler, ScenePlan, plan_for_scene
from src.video_restyle.tools import ToolRunner

__all__ = [
    "SCENE_DETECTION_EXIT_CODE",
    "RunContext",
    "RunDependencies",
    "RunRequest",
    "RunResult",
    "SceneOutcome",
    "apply_overrides",
    "detect_scenes",
    "plan_scenes",
    "prepare_run",
    "run",
    "run_async",
]

logger = logging.getLogger(__name__)

SCENE_DETECTION_EXIT_CODE = 3
"""Exit status when the scene-cut pass cannot run before any scene starts."""


@dataclass
class RunRequest:
    config_path: str | None = None
    root_override: str | None = None
    stride: int | None = None
    mask_gain: float | None = None
    max_scenes: int | None = None
    backends: Tuple[str, ...] = ()
    template: str | None = None
    anchor_template: str | None = None
    rescan_scenes: bool = False
    quiet: bool = False
    verbose: bool = False
    no_color: bool = False


@dataclass
class RunDependencies:
    """Injectable collaborators; ``None`` selects the production implementation."""

    tools: ToolRunner | None = None
    transport: httpx.AsyncBaseTransport | None = None
    reporter: CliOutputManagerProtocol | None = None
    sleep: Callable[[float], Awaitable[None]] | None = None


@dataclass
class RunContext:
    preflight: PreflightResult
    cfg: AppConfig
    root: Path
    layout: ArtifactLayout
    space: SlideSpace
    tools: ToolRunner
    reporter: CliOutputManagerProtocol
    frame_count: int
    warnings: List[str] = field(default_factory=list)


@dataclass
class SceneOutcome:
    scene: Scene
    slides: List[int] = field(default_factory=list)
    error: Optional[SceneFailedError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunResult:
    root: Path
    config: AppConfig
    frame_count: int
    outcomes: List[SceneOutcome]
    submitted: List[int]
    backends: List[Dict[str, object]]
    warnings: List[str] = field(default_factory=list)

    @property
    def failed(self) -> List[SceneOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


def apply_overrides(cfg: AppConfig, request: RunRequest) -> AppConfig:
    """Return a validated copy of ``cfg`` with the request's CLI overrides applied."""

    updated = copy.deepcopy(cfg)
    if request.stride is not None:
        updated.frames.stride = request.stride
    if request.mask_gain is not None:
        updated.mask.gain = request.mask_gain
    if request.max_scenes is not None:
        updated.scenes.max_concurrent_scenes = request.max_scenes
    if request.backends:
        updated.backends.endpoints = list(request.backends)
    if request.template is not None:
        updated.prompt.template = request.template
    if request.anchor_template is not None:
        updated.prompt.anchor_template = request.anchor_template
    try:
        return validate_config(updated)
    except ConfigError as exc:
        raise CLIAppError(
            f"Invalid override: {exc}",
            code=2,
            rich_message=f"[red]Invalid override:[/red] {escape(str(exc))}",
        ) from exc


def prepare_run(request: RunRequest, dependencies: RunDependencies | None = None) -> RunContext:
    """Resolve config and workspace, and make sure there are frames to work on."""

    deps = dependencies or RunDependencies()
    preflight = prepare_preflight(
        cli_root=request.root_override,
        config_override=request.config_path,
    )
    cfg = apply_overrides(preflight.config, request)
    root = preflight.workspace_root
    layout = ArtifactLayout(
        root=root,
        input_dir=cfg.frames.input_dir,
        interp_dir=cfg.frames.interp_dir,
        out_dir=cfg.frames.out_dir,
        extension=cfg.frames.extension,
    )
    reporter = deps.reporter or CliOutputManager(
        quiet=request.quiet,
        verbose=request.verbose,
        no_color=request.no_color,
    )
    warnings = list(preflight.warnings)
    for warning in warnings:
        reporter.warn(warning)
        logger.warning("%s", warning)

    frame_count = layout.count_raw_frames()
    if frame_count == 0:
        message = f"No raw frames found in {layout.input_path} (expected {layout.raw_frame(1).name}, ...)"
        raise CLIAppError(message, code=2, rich_message=f"[red]{escape(message)}[/red]")
    if cfg.frames.anchor_frame > frame_count:
        message = f"frames.anchor_frame {cfg.frames.anchor_frame} exceeds the {frame_count} available frame(s)"
        raise CLIAppError(message, code=2, rich_message=f"[red]{escape(message)}[/red]")
    layout.ensure_dirs()

    return RunContext(
        preflight=preflight,
        cfg=cfg,
        root=root,
        layout=layout,
        space=SlideSpace(stride=cfg.frames.stride, anchor_frame=cfg.frames.anchor_frame),
        tools=deps.tools or ToolRunner(cfg.tools),
        reporter=reporter,
        frame_count=frame_count,
        warnings=warnings,
    )


def _load_templates(context: RunContext) -> Tuple[PromptTemplate, PromptTemplate]:
    prompt = context.cfg.prompt

    def _load(name: str) -> PromptTemplate:
        path = Path(name).expanduser()
        if not path.is_absolute():
            path = context.root / path
        try:
            return PromptTemplate.load(path)
        except TemplateError as exc:
            raise CLIAppError(
                str(exc), code=2, rich_message=f"[red]Template error:[/red] {escape(str(exc))}"
            ) from exc

    template = _load(prompt.template)
    anchor = _load(prompt.anchor_template) if prompt.anchor_template else template
    return template, anchor


async def _scenes_for(context: RunContext, *, rescan: bool) -> List[Scene]:
    segmenter = SceneSegmenter(context.cfg.scenes, context.layout, context.tools)
    try:
        return await segmenter.scenes(context.frame_count, rescan=rescan)
    except ExternalToolFailure as exc:
        message = f"Scene detection failed: {exc}"
        raise CLIAppError(
            message,
            code=SCENE_DETECTION_EXIT_CODE,
            rich_message=(
                f"[red]Scene detection failed:[/red] {escape(str(exc))}\n"
                + escape("Check [tools].ffmpeg, or set [scenes].enable = false to treat the frames as one scene.")
            ),
        ) from exc


def detect_scenes(request: RunRequest, *, dependencies: RunDependencies | None = None) -> Tuple[RunContext, List[Scene]]:
    context = prepare_run(request, dependencies)
    scenes = asyncio.run(_scenes_for(context, rescan=request.rescan_scenes))
    return context, scenes


def plan_scenes(
    request: RunRequest, *, dependencies: RunDependencies | None = None
) -> Tuple[RunContext, List[Tuple[Scene, Optional[ScenePlan]]]]:
    """Scene partition plus the dependency plan of each scene, without running anything."""

    context, scenes = detect_scenes(request, dependencies=dependencies)
    cfg = context.cfg
    return context, [(scene, plan_for_scene(scene, context.space, cfg.scheduler)) for scene in scenes]


def _count_slides(space: SlideSpace, scenes: Sequence[Scene]) -> int:
    return sum(len(space.slides_in(scene.lo, scene.hi)) for scene in scenes)


async def run_async(request: RunRequest, *, dependencies: RunDependencies | None = None) -> RunResult:
    """Restyle every slide of every scene; scene failures are reported, not raised."""

    deps = dependencies or RunDependencies()
    context = prepare_run(request, deps)
    cfg = context.cfg
    reporter = context.reporter
    template, anchor_template = _load_templates(context)
    scenes = await _scenes_for(context, rescan=request.rescan_scenes)
    total = _count_slides(context.space, scenes)

    reporter.banner("video-restyle")
    reporter.line(
        f"{context.frame_count} frame(s), stride {cfg.frames.stride}: "
        f"{total} slide(s) across {len(scenes)} scene(s) on {len(cfg.backends.endpoints)} backend(s)"
    )

    async with httpx.AsyncClient(transport=deps.transport, timeout=DEFAULT_HTTP_TIMEOUT) as client:
        submitter = JobSubmitter(
            client,
            cfg.backends,
            cfg.polling,
            root=context.root,
            sleep=deps.sleep,
        )
        pool: BackendPool[Any, Path] = BackendPool(cfg.backends.endpoints, submitter)
        progress = reporter.progress(transient=False)
        if not cfg.cli.progress:
            progress.disable = True
        with progress:
            task_id = progress.add_task("Restyling", total=total)

            def _on_slide(slide: int, skipped: bool) -> None:
                progress.advance(task_id)
                if skipped:
                    reporter.verbose_line(f"slide {slide} already rendered")

            scheduler = FrameScheduler(
                cfg,
                context.layout,
                context.tools,
                pool,
                template=template,
                anchor_template=anchor_template,
                on_slide=_on_slide,
            )
            semaphore = asyncio.Semaphore(cfg.scenes.max_concurrent_scenes)

            async def _run_scene(scene: Scene) -> SceneOutcome:
                async with semaphore:
                    try:
                        slides = await scheduler.run_scene(scene)
                    except SceneFailedError as exc:
                        logger.error("%s", exc)
                        reporter.warn(str(exc))
                        return SceneOutcome(scene=scene, error=exc)
                    return SceneOutcome(scene=scene, slides=slides)

            outcomes = list(await asyncio.gather(*(_run_scene(scene) for scene in scenes)))

    if any(
        outcome.error is not None and isinstance(outcome.error.cause, NoLiveBackendsError)
        for outcome in outcomes
    ):
        reporter.warn("All generation backends were marked dead; remaining slides were not rendered.")

    return RunResult(
        root=context.root,
        config=cfg,
        frame_count=context.frame_count,
        outcomes=outcomes,
        submitted=list(submitter.submitted),
        backends=pool.snapshot(),
        warnings=reporter.get_warnings(),
    )


def run(request: RunRequest, *, dependencies: RunDependencies | None = None) -> RunResult:
    """Synchronous entry point around :func:`run_async`."""

    return asyncio.run(run_async(request, dependencies=dependencies))
