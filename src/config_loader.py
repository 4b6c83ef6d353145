"""Configuration loader that parses and validates user-provided TOML."""

from __future__ import annotations

import math
import tomllib
from dataclasses import fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping
from urllib.parse import urlsplit

from .datatypes import (
    AppConfig,
    BackendsConfig,
    BoundaryMode,
    CLIConfig,
    FramesConfig,
    MaskConfig,
    PollingConfig,
    PromptConfig,
    ScenesConfig,
    SchedulerConfig,
    ToolsConfig,
)


class ConfigError(ValueError):
    """Raised when the configuration file is malformed or fails validation."""


_SECTIONS: Dict[str, type] = {
    "frames": FramesConfig,
    "scheduler": SchedulerConfig,
    "scenes": ScenesConfig,
    "mask": MaskConfig,
    "prompt": PromptConfig,
    "backends": BackendsConfig,
    "polling": PollingConfig,
    "tools": ToolsConfig,
    "cli": CLIConfig,
}


def _coerce_bool(value: Any, dotted_key: str) -> bool:
    """Return a bool, coercing simple 0/1 representations when necessary."""

    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"0", "1"}:
            return normalized == "1"
        if normalized in {"true", "false"}:
            return normalized == "true"
    raise ConfigError(f"{dotted_key} must be a boolean (use true/false).")


def _coerce_enum(value: Any, dotted_key: str, enum_type: type[Enum]) -> Enum:
    """Return an enum member, coercing string values case-insensitively."""

    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        for member in enum_type:
            member_value = str(member.value).lower()
            if normalized == member_value:
                return member
    raise ConfigError(
        f"{dotted_key} must be one of: {', '.join(str(member.value) for member in enum_type)}"
    )


def _sanitize_section(raw: dict[str, Any], name: str, cls):
    """
    Coerce a raw TOML table into an instance of ``cls`` with cleaned booleans.

    Parameters:
        raw (dict[str, Any]): Raw TOML section data.
        name (str): Section name used when reporting validation errors.
        cls: Dataclass type used to construct the section object.

    Returns:
        Any: Instantiated dataclass populated with values from ``raw``.

    Raises:
        ConfigError: If the section is not a table or contains invalid keys or values.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table")
    cleaned: Dict[str, Any] = {}
    cls_fields = {field.name: field for field in fields(cls)}
    bool_fields = {name for name, field in cls_fields.items() if field.type is bool}
    enum_fields = {
        field_name: field.type
        for field_name, field in cls_fields.items()
        if isinstance(field.type, type) and issubclass(field.type, Enum)
    }
    nested_fields = {
        name: field.type
        for name, field in cls_fields.items()
        if is_dataclass(field.type)
    }
    for key, value in raw.items():
        if key in bool_fields:
            cleaned[key] = _coerce_bool(value, f"{name}.{key}")
        elif key in enum_fields:
            cleaned[key] = _coerce_enum(value, f"{name}.{key}", enum_fields[key])
        elif key in nested_fields:
            if not isinstance(value, dict):
                raise ConfigError(f"[{name}.{key}] must be a table")
            cleaned[key] = _sanitize_section(value, f"{name}.{key}", nested_fields[key])
        else:
            cleaned[key] = value
    try:
        instance = cls(**cleaned)
    except TypeError as exc:
        raise ConfigError(f"Invalid keys in [{name}]: {exc}") from exc
    return instance


def _normalize_float(value: Any, dotted_key: str) -> float:
    """Return ``value`` as a finite float, raising ConfigError otherwise."""

    if isinstance(value, bool):
        raise ConfigError(f"{dotted_key} must be a number")
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{dotted_key} must be a number") from exc
    if not math.isfinite(numeric):
        raise ConfigError(f"{dotted_key} must be a finite number")
    return numeric


def _normalize_int(value: Any, dotted_key: str, *, minimum: int) -> int:
    """Return ``value`` as an int no smaller than ``minimum``."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{dotted_key} must be an integer")
    if value < minimum:
        raise ConfigError(f"{dotted_key} must be >= {minimum}")
    return value


def _validate_relative_dir(value: Any, dotted_key: str) -> str:
    """Return a workspace-relative directory name."""

    text = str(value).strip()
    if not text:
        raise ConfigError(f"{dotted_key} must be set")
    path = Path(text)
    if path.is_absolute():
        raise ConfigError(f"{dotted_key} must be relative to the workspace root")
    if ".." in path.parts:
        raise ConfigError(f"{dotted_key} may not contain '..' segments")
    return text


def _validate_endpoints(endpoints: Any) -> list[str]:
    """Return the backend endpoint list with trailing slashes removed."""

    if isinstance(endpoints, str):
        endpoints = [endpoints]
    if not isinstance(endpoints, list) or not endpoints:
        raise ConfigError("backends.endpoints must be a non-empty list of URLs")
    cleaned: list[str] = []
    for entry in endpoints:
        if not isinstance(entry, str):
            raise ConfigError("backends.endpoints entries must be strings")
        url = entry.strip().rstrip("/")
        parsed = urlsplit(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigError(f"backends.endpoints entry {entry!r} is not an http(s) URL")
        cleaned.append(url)
    return cleaned


def validate_config(app: AppConfig) -> AppConfig:
    """Normalise and validate ``app`` in place, returning it for chaining."""

    frames = app.frames
    frames.stride = _normalize_int(frames.stride, "frames.stride", minimum=1)
    frames.anchor_frame = _normalize_int(frames.anchor_frame, "frames.anchor_frame", minimum=1)
    extension = str(frames.extension).strip().lstrip(".").lower()
    if not extension:
        raise ConfigError("frames.extension must be set")
    frames.extension = extension
    frames.input_dir = _validate_relative_dir(frames.input_dir, "frames.input_dir")
    frames.interp_dir = _validate_relative_dir(frames.interp_dir, "frames.interp_dir")
    frames.out_dir = _validate_relative_dir(frames.out_dir, "frames.out_dir")
    if len({frames.input_dir, frames.interp_dir, frames.out_dir}) != 3:
        raise ConfigError("frames.input_dir, frames.interp_dir and frames.out_dir must differ")

    scheduler = app.scheduler
    scheduler.group_size = _normalize_int(scheduler.group_size, "scheduler.group_size", minimum=2)
    scheduler.node_workers = _normalize_int(scheduler.node_workers, "scheduler.node_workers", minimum=1)
    if not isinstance(scheduler.boundary_mode, BoundaryMode):
        scheduler.boundary_mode = _coerce_enum(
            scheduler.boundary_mode, "scheduler.boundary_mode", BoundaryMode
        )  # type: ignore[assignment]

    scenes = app.scenes
    threshold = _normalize_float(scenes.threshold, "scenes.threshold")
    if threshold <= 0 or threshold >= 1:
        raise ConfigError("scenes.threshold must be between 0 and 1 (exclusive)")
    scenes.threshold = threshold
    scenes.min_frames = _normalize_int(scenes.min_frames, "scenes.min_frames", minimum=1)
    scenes.max_concurrent_scenes = _normalize_int(
        scenes.max_concurrent_scenes, "scenes.max_concurrent_scenes", minimum=1
    )
    if not str(scenes.cache_filename).strip():
        raise ConfigError("scenes.cache_filename must be set")

    gain = _normalize_float(app.mask.gain, "mask.gain")
    if gain <= 0:
        raise ConfigError("mask.gain must be > 0")
    app.mask.gain = gain

    prompt = app.prompt
    prompt.template = str(prompt.template).strip()
    if not prompt.template:
        raise ConfigError("prompt.template must be set")
    prompt.anchor_template = str(prompt.anchor_template or "").strip()

    backends = app.backends
    backends.endpoints = _validate_endpoints(backends.endpoints)
    if not str(backends.output_dir).strip():
        raise ConfigError("backends.output_dir must be set")
    prefix_dir = str(backends.prefix_dir).strip().strip("/")
    if not prefix_dir or ".." in Path(prefix_dir).parts:
        raise ConfigError("backends.prefix_dir must be a relative directory name")
    backends.prefix_dir = prefix_dir
    backends.submit_retries = _normalize_int(
        backends.submit_retries, "backends.submit_retries", minimum=0
    )

    polling = app.polling
    polling.interval_seconds = _normalize_float(polling.interval_seconds, "polling.interval_seconds")
    if polling.interval_seconds <= 0:
        raise ConfigError("polling.interval_seconds must be > 0")
    polling.settle_seconds = _normalize_float(polling.settle_seconds, "polling.settle_seconds")
    if polling.settle_seconds < 0:
        raise ConfigError("polling.settle_seconds must be >= 0")
    polling.max_wait_seconds = _normalize_float(polling.max_wait_seconds, "polling.max_wait_seconds")
    if polling.max_wait_seconds < 0:
        raise ConfigError("polling.max_wait_seconds must be >= 0 (0 disables the bound)")

    tools = app.tools
    if not str(tools.ffmpeg).strip():
        raise ConfigError("tools.ffmpeg must be set")
    if not str(tools.motion_warp).strip():
        raise ConfigError("tools.motion_warp must be set")
    tools.warp_step = _normalize_int(tools.warp_step, "tools.warp_step", minimum=1)
    if frames.stride % tools.warp_step != 0:
        raise ConfigError("tools.warp_step must divide frames.stride")
    tools.timeout_seconds = _normalize_float(tools.timeout_seconds, "tools.timeout_seconds")
    if tools.timeout_seconds < 0:
        raise ConfigError("tools.timeout_seconds must be >= 0 (0 disables the bound)")

    return app


def parse_config(raw: Mapping[str, Any]) -> AppConfig:
    """Build a validated :class:`AppConfig` from an already-parsed TOML mapping."""

    unknown = sorted(set(raw) - set(_SECTIONS))
    if unknown:
        raise ConfigError(f"Unknown configuration section(s): {', '.join(unknown)}")
    sections = {
        name: _sanitize_section(raw.get(name, {}), name, cls) for name, cls in _SECTIONS.items()
    }
    return validate_config(AppConfig(**sections))


def load_config(path: str) -> AppConfig:
    """
    Load and validate a restyle configuration file.

    Parameters:
        path (str): Path to a UTF-8 TOML configuration file.

    Returns:
        AppConfig: Fully populated configuration with defaults for omitted keys.

    Raises:
        ConfigError: If the file is not UTF-8, TOML parsing fails, or any validation rule is violated.
    """

    with open(path, "rb") as handle:
        raw_bytes = handle.read()
    if raw_bytes.startswith(b"\xef\xbb\xbf"):
        raw_bytes = raw_bytes[3:]
    try:
        raw = tomllib.loads(raw_bytes.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise ConfigError("Configuration file must be UTF-8 encoded") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse TOML: {exc}") from exc
    return parse_config(raw)
