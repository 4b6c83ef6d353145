"""Configuration dataclasses for the video restyle pipeline."""
from dataclasses import dataclass, field
from enum import Enum
from typing import List


class BoundaryMode(str, Enum):
    """How group boundaries and scene edges are produced."""

    ANCHOR = "anchor"
    PROPAGATE = "propagate"


@dataclass
class FramesConfig:
    """Raw frame layout and the stride that maps frames onto slides."""

    stride: int = 4
    anchor_frame: int = 1
    extension: str = "png"
    input_dir: str = "in"
    interp_dir: str = "interp"
    out_dir: str = "out"


@dataclass
class SchedulerConfig:
    """Binary-subdivision scheduling controls."""

    group_size: int = 1024
    node_workers: int = 8
    boundary_mode: BoundaryMode = BoundaryMode.ANCHOR


@dataclass
class ScenesConfig:
    """Shot-cut detection and per-scene concurrency."""

    enable: bool = True
    threshold: float = 0.3
    min_frames: int = 1
    cache_filename: str = "scenes.json"
    max_concurrent_scenes: int = 16


@dataclass
class MaskConfig:
    """Change-mask amplification."""

    gain: float = 4.0


@dataclass
class PromptConfig:
    """Backend job graph templates."""

    template: str = "restyle.json"
    anchor_template: str = ""


@dataclass
class BackendsConfig:
    """Generation backend endpoints and where their artifacts appear."""

    endpoints: List[str] = field(default_factory=lambda: ["http://127.0.0.1:7821"])
    output_dir: str = "output"
    prefix_dir: str = "stable-restyle-out"
    submit_retries: int = 0


@dataclass
class PollingConfig:
    """Filesystem completion polling."""

    interval_seconds: float = 1.0
    settle_seconds: float = 1.0
    max_wait_seconds: float = 0.0


@dataclass
class ToolsConfig:
    """External executables."""

    ffmpeg: str = "ffmpeg"
    motion_warp: str = "./motion-transfer/motion-transfer"
    warp_step: int = 1
    timeout_seconds: float = 0.0


@dataclass
class CLIConfig:
    """CLI presentation controls."""

    progress: bool = True


@dataclass
class AppConfig:
    """Aggregated configuration loaded from the user-provided TOML file."""

    frames: FramesConfig = field(default_factory=FramesConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    scenes: ScenesConfig = field(default_factory=ScenesConfig)
    mask: MaskConfig = field(default_factory=MaskConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    backends: BackendsConfig = field(default_factory=BackendsConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    cli: CLIConfig = field(default_factory=CLIConfig)
