"""Workspace and configuration resolution performed before a run starts."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from rich.markup import escape

from src.config_loader import ConfigError, load_config
from src.datatypes import AppConfig
from src.video_restyle.cli_runtime import CLIAppError

CONFIG_ENV_VAR: Final[str] = "VIDEO_RESTYLE_CONFIG"
ROOT_ENV_VAR: Final[str] = "VIDEO_RESTYLE_ROOT"
DEFAULT_CONFIG_NAME: Final[str] = "restyle.toml"
PROJECT_ROOT: Final[Path] = Path(__file__).resolve().parents[2]
PACKAGED_TEMPLATE_PATH: Final[Path] = (
    PROJECT_ROOT / "src" / "data" / "config.toml.template"
).resolve()

__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_NAME",
    "PACKAGED_TEMPLATE_PATH",
    "PreflightResult",
    "ROOT_ENV_VAR",
    "prepare_preflight",
    "resolve_config_path",
    "resolve_subdir",
    "resolve_workspace_root",
    "seed_default_config",
]


@dataclass
class PreflightResult:
    """Resolved configuration and workspace paths used during startup."""

    workspace_root: Path
    config_path: Path
    config: AppConfig
    warnings: tuple[str, ...] = ()


def resolve_subdir(root: Path, relative: str, *, purpose: str) -> Path:
    """Return ``root / relative``, refusing paths that escape ``root``."""

    try:
        root_resolved = root.resolve()
    except OSError as exc:
        raise CLIAppError(
            f"Unable to resolve workspace root '{root}': {exc}",
            rich_message=f"[red]Unable to resolve workspace root:[/red] {exc}",
        ) from exc

    resolved = (root_resolved / Path(str(relative))).resolve()
    try:
        resolved.relative_to(root_resolved)
    except ValueError as exc:
        message = f"Configured {purpose} escapes the workspace root: '{relative}' -> {resolved}"
        raise CLIAppError(message, rich_message=f"[red]{escape(message)}[/red]") from exc
    return resolved


def resolve_workspace_root(cli_root: str | None) -> Path:
    """Resolve the workspace root from the CLI flag, the environment, or the cwd."""

    if cli_root:
        candidate = Path(cli_root).expanduser()
    else:
        env_root = os.environ.get(ROOT_ENV_VAR)
        candidate = Path(env_root).expanduser() if env_root else Path.cwd()

    try:
        resolved = candidate.resolve()
    except OSError as exc:
        raise CLIAppError(
            f"Failed to resolve workspace root '{candidate}': {exc}",
            code=2,
            rich_message=f"[red]Failed to resolve workspace root:[/red] {exc}",
        ) from exc
    if not resolved.is_dir():
        message = f"Workspace root '{resolved}' is not a directory"
        raise CLIAppError(message, code=2, rich_message=f"[red]{escape(message)}[/red]")
    return resolved


def resolve_config_path(workspace_root: Path, config_override: str | None) -> Path:
    if config_override:
        return Path(config_override).expanduser()
    env_override = os.environ.get(CONFIG_ENV_VAR)
    if env_override:
        return Path(env_override).expanduser()
    return workspace_root / DEFAULT_CONFIG_NAME


def seed_default_config(path: Path) -> bool:
    """Copy the packaged template to ``path`` unless a file already exists there."""

    if path.exists():
        return False
    try:
        text = PACKAGED_TEMPLATE_PATH.read_text(encoding="utf-8")
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("x", encoding="utf-8") as handle:
            handle.write(text)
    except FileExistsError:
        return False
    except OSError as exc:
        message = f"Unable to create default config at {path}: {exc}"
        raise CLIAppError(
            message,
            code=2,
            rich_message=f"[red]Unable to create default config:[/red] {escape(str(exc))}",
        ) from exc
    return True


def prepare_preflight(
    *,
    cli_root: str | None,
    config_override: str | None,
) -> PreflightResult:
    """Resolve the workspace root and load its configuration."""

    workspace_root = resolve_workspace_root(cli_root)
    config_path = resolve_config_path(workspace_root, config_override)
    warnings: list[str] = []

    cfg: AppConfig
    try:
        cfg = load_config(str(config_path))
    except FileNotFoundError:
        if config_override:
            raise CLIAppError(
                f"Config file not found: {config_path}",
                code=2,
                rich_message=f"[red]Config file not found:[/red] {config_path}",
            ) from None
        cfg = AppConfig()
        warnings.append(f"Config file not found; using defaults (expected {config_path})")
    except PermissionError as exc:
        raise CLIAppError(
            f"Config file is not readable: {config_path}",
            code=2,
            rich_message=f"[red]Config file is not readable:[/red] {config_path}",
        ) from exc
    except OSError as exc:
        raise CLIAppError(
            f"Failed to read config file: {exc}",
            code=2,
            rich_message=f"[red]Failed to read config file:[/red] {exc}",
        ) from exc
    except ConfigError as exc:
        raise CLIAppError(
            f"Invalid configuration: {exc}",
            code=2,
            rich_message=f"[red]Invalid configuration:[/red] {escape(str(exc))}",
        ) from exc

    for purpose, relative in (
        ("[frames].input_dir", cfg.frames.input_dir),
        ("[frames].interp_dir", cfg.frames.interp_dir),
        ("[frames].out_dir", cfg.frames.out_dir),
    ):
        resolve_subdir(workspace_root, relative, purpose=purpose)

    return PreflightResult(
        workspace_root=workspace_root,
        config_path=config_path,
        config=cfg,
        warnings=tuple(warnings),
    )
