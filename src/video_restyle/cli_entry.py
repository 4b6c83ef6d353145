"""Click CLI wiring and entry points for video_restyle."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, NoReturn, Optional, cast

import click
from rich import print
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from src.video_restyle import runner
from src.video_restyle.cli_runtime import CLIAppError
from src.video_restyle.preflight import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_NAME,
    ROOT_ENV_VAR,
    resolve_config_path,
    resolve_workspace_root,
    seed_default_config,
)
from src.video_restyle.scheduler import describe_plan

_DEFAULT_CONFIG_HELP = (
    f"Config file path. Defaults to {CONFIG_ENV_VAR} or <root>/{DEFAULT_CONFIG_NAME}; "
    "built-in defaults apply when neither exists."
)

_HANDLER_MARKER = "_video_restyle_handler"


def _configure_logging(*, verbose: bool, quiet: bool, no_color: bool) -> None:
    """Route library logging through a single RichHandler on stderr."""

    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root_logger.removeHandler(handler)
    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_path=verbose,
        rich_tracebacks=verbose,
        markup=False,
    )
    setattr(handler, _HANDLER_MARKER, True)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    logging.getLogger("httpx").setLevel(logging.WARNING if not verbose else logging.INFO)


def _request_from_context(ctx: click.Context, **overrides: Any) -> runner.RunRequest:
    params = cast(Dict[str, Any], ctx.ensure_object(dict))
    return runner.RunRequest(
        config_path=params.get("config_path"),
        root_override=params.get("root_path"),
        quiet=bool(params.get("quiet", False)),
        verbose=bool(params.get("verbose", False)),
        no_color=bool(params.get("no_color", False)),
        **overrides,
    )


def _fail(exc: CLIAppError) -> NoReturn:
    print(exc.rich_message)
    raise click.exceptions.Exit(exc.code) from exc


@click.group()
@click.option(
    "--root",
    "root_path",
    default=None,
    help=f"Workspace root holding the frame directories. Defaults to {ROOT_ENV_VAR} or the cwd.",
)
@click.option("--config", "config_path", default=None, show_default=False, help=_DEFAULT_CONFIG_HELP)
@click.option("--quiet", is_flag=True, help="Only report warnings, errors and the final summary.")
@click.option("--verbose", is_flag=True, help="Show debug logging, including skipped slides.")
@click.option("--no-color", is_flag=True, help="Disable ANSI colour output.")
@click.pass_context
def main(
    ctx: click.Context,
    root_path: str | None,
    config_path: str | None,
    *,
    quiet: bool,
    verbose: bool,
    no_color: bool,
) -> None:
    """Restyle a directory of video frames through remote generation backends."""

    if quiet and verbose:
        raise click.UsageError("Cannot combine --quiet with --verbose.")
    params_map = cast(Dict[str, Any], ctx.ensure_object(dict))
    params_map.update(
        {
            "root_path": root_path,
            "config_path": config_path,
            "quiet": quiet,
            "verbose": verbose,
            "no_color": no_color,
        }
    )
    _configure_logging(verbose=verbose, quiet=quiet, no_color=no_color)


def _render_run_summary(result: runner.RunResult, *, quiet: bool) -> None:
    console = Console()
    table = Table(title="Scenes", show_lines=False)
    table.add_column("Scene", justify="right")
    table.add_column("Frames")
    table.add_column("Slides", justify="right")
    table.add_column("Status")
    for outcome in result.outcomes:
        scene = outcome.scene
        status = "[green]ok[/green]" if outcome.ok else f"[red]{escape(str(outcome.error))}[/red]"
        table.add_row(
            str(scene.index),
            f"{scene.lo}-{scene.hi - 1}",
            str(len(outcome.slides)),
            status,
        )
    if not quiet:
        console.print(table)
        backends = Table(title="Backends")
        backends.add_column("#", justify="right")
        backends.add_column("Endpoint")
        backends.add_column("Jobs", justify="right")
        backends.add_column("State")
        for entry in result.backends:
            backends.add_row(
                str(entry["index"]),
                str(entry["endpoint"]),
                str(entry["completed"]),
                "[green]live[/green]" if entry["alive"] else "[red]dead[/red]",
            )
        console.print(backends)
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}", highlight=False)
    submitted = len(result.submitted)
    if result.ok:
        console.print(f"[✓] {submitted} slide(s) submitted; output in {result.root / result.config.frames.out_dir}")
    else:
        console.print(
            f"[red]{len(result.failed)} of {len(result.outcomes)} scene(s) failed[/red] "
            f"({submitted} slide(s) submitted)"
        )


@main.command("run")
@click.option("--stride", type=click.IntRange(min=1), default=None, help="Override [frames].stride.")
@click.option("--mask-gain", type=float, default=None, help="Override [mask].gain.")
@click.option(
    "--max-scenes",
    type=click.IntRange(min=1),
    default=None,
    help="Override [scenes].max_concurrent_scenes.",
)
@click.option(
    "--backend",
    "backends",
    multiple=True,
    help="Backend endpoint URL. Repeatable; replaces [backends].endpoints.",
)
@click.option("--template", default=None, help="Override [prompt].template.")
@click.option("--anchor-template", default=None, help="Override [prompt].anchor_template.")
@click.option("--rescan-scenes", is_flag=True, help="Ignore the cached scene list and detect cuts again.")
@click.pass_context
def run_command(
    ctx: click.Context,
    stride: Optional[int],
    mask_gain: Optional[float],
    max_scenes: Optional[int],
    backends: tuple[str, ...],
    template: Optional[str],
    anchor_template: Optional[str],
    rescan_scenes: bool,
) -> None:
    """Restyle every slide, skipping outputs that already exist."""

    request = _request_from_context(
        ctx,
        stride=stride,
        mask_gain=mask_gain,
        max_scenes=max_scenes,
        backends=tuple(backends),
        template=template,
        anchor_template=anchor_template,
        rescan_scenes=rescan_scenes,
    )
    try:
        result = runner.run(request)
    except CLIAppError as exc:
        _fail(exc)
    _render_run_summary(result, quiet=request.quiet)
    if not result.ok:
        raise click.exceptions.Exit(1)


@main.command("plan")
@click.option("--stride", type=click.IntRange(min=1), default=None, help="Override [frames].stride.")
@click.option("--rescan-scenes", is_flag=True, help="Ignore the cached scene list and detect cuts again.")
@click.option("--json", "json_mode", is_flag=True, help="Emit the plan as JSON.")
@click.pass_context
def plan_command(ctx: click.Context, stride: Optional[int], rescan_scenes: bool, json_mode: bool) -> None:
    """Print the dependency plan of every scene without submitting jobs."""

    request = _request_from_context(ctx, stride=stride, rescan_scenes=rescan_scenes)
    try:
        context, plans = runner.plan_scenes(request)
    except CLIAppError as exc:
        _fail(exc)

    payload = []
    for scene, plan in plans:
        payload.append(
            {
                "scene": scene.index,
                "frames": [scene.lo, scene.hi - 1],
                "anchor": plan.anchor if plan is not None else None,
                "nodes": describe_plan(plan) if plan is not None else [],
            }
        )
    if json_mode:
        click.echo(json.dumps(payload, separators=(",", ":")))
        return

    console = Console()
    console.print(
        f"{context.frame_count} frame(s), stride {context.cfg.frames.stride}, "
        f"group size {context.cfg.scheduler.group_size}"
    )
    for entry in payload:
        table = Table(title=f"Scene {entry['scene']} (frames {entry['frames'][0]}-{entry['frames'][1]})")
        table.add_column("Slide", justify="right")
        table.add_column("Frame", justify="right")
        table.add_column("Kind")
        table.add_column("From")
        table.add_column("Depth", justify="right")
        for row in cast(list, entry["nodes"]):
            sources = [str(row[key]) for key in ("lower", "upper") if row[key] is not None]
            sources.extend(f"after {slide}" for slide in row["after"])
            table.add_row(
                str(row["slide"]),
                str(context.space.frame_of(int(row["slide"]))),
                str(row["kind"]),
                ", ".join(sources) or "-",
                str(row["depth"]),
            )
        console.print(table)


@main.command("scenes")
@click.option("--rescan-scenes", is_flag=True, help="Ignore the cached scene list and detect cuts again.")
@click.option("--json", "json_mode", is_flag=True, help="Emit the scene list as JSON.")
@click.pass_context
def scenes_command(ctx: click.Context, rescan_scenes: bool, json_mode: bool) -> None:
    """Detect (or load cached) scene cuts and list the scenes."""

    request = _request_from_context(ctx, rescan_scenes=rescan_scenes)
    try:
        context, scenes = runner.detect_scenes(request)
    except CLIAppError as exc:
        _fail(exc)

    if json_mode:
        click.echo(
            json.dumps(
                [{"scene": s.index, "lo": s.lo, "hi": s.hi} for s in scenes],
                separators=(",", ":"),
            )
        )
        return
    table = Table(title=f"{len(scenes)} scene(s) over {context.frame_count} frame(s)")
    table.add_column("Scene", justify="right")
    table.add_column("First frame", justify="right")
    table.add_column("Last frame", justify="right")
    table.add_column("Slides", justify="right")
    for scene in scenes:
        table.add_row(
            str(scene.index),
            str(scene.lo),
            str(scene.hi - 1),
            str(len(context.space.slides_in(scene.lo, scene.hi))),
        )
    Console().print(table)


@main.command("init")
@click.pass_context
def init_command(ctx: click.Context) -> None:
    """Write the default configuration file into the workspace."""

    params = cast(Dict[str, Any], ctx.ensure_object(dict))
    try:
        root = resolve_workspace_root(params.get("root_path"))
        path = resolve_config_path(root, params.get("config_path"))
        created = seed_default_config(path)
    except CLIAppError as exc:
        _fail(exc)
    if created:
        print(f"Wrote default config to {path}")
    else:
        print(f"Config already exists at {path}")


def entry() -> None:
    try:
        main(standalone_mode=True)
    except KeyboardInterrupt:
        sys.exit(130)


cli = main

__all__ = ["cli", "entry", "main"]
