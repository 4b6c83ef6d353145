from __future__ import annotations

import base64
import json
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set
from urllib.parse import urlsplit

import httpx

from src.datatypes import ToolsConfig
from src.video_restyle.errors import ExternalToolFailure
from src.video_restyle.tools import CompletedTool, ToolRunner

__all__ = [
    "EXAMPLE_TEMPLATE",
    "FakeBackends",
    "FakeToolRunner",
    "make_workspace",
    "write_config",
]

EXAMPLE_TEMPLATE = Path(__file__).resolve().parents[2] / "src" / "data" / "restyle.example.json"

_BASE_CONFIG = """
[frames]
stride = {stride}

[scenes]
enable = {scenes_enable}

[polling]
interval_seconds = 0.001
settle_seconds = 0

[backends]
endpoints = [{endpoints}]
output_dir = "output"

[prompt]
template = "restyle.json"
"""


def write_config(
    root: Path,
    *,
    stride: int = 2,
    endpoints: Sequence[str] = ("http://backend-a:7821", "http://backend-b:7821"),
    scenes_enable: bool = False,
    extra: str = "",
) -> Path:
    text = _BASE_CONFIG.format(
        stride=stride,
        scenes_enable="true" if scenes_enable else "false",
        endpoints=", ".join(f'"{endpoint}"' for endpoint in endpoints),
    )
    path = root / "restyle.toml"
    path.write_text(text + extra, encoding="utf-8")
    return path


def make_workspace(root: Path, *, frames: int = 9, **config: Any) -> Path:
    """Raw frames ``in/000001.png`` onward, a job template and a config file."""

    input_dir = root / "in"
    input_dir.mkdir(parents=True, exist_ok=True)
    for index in range(1, frames + 1):
        (input_dir / f"{index:06d}.png").write_bytes(f"raw-{index}".encode())
    shutil.copyfile(EXAMPLE_TEMPLATE, root / "restyle.json")
    write_config(root, **config)
    return root


class FakeToolRunner(ToolRunner):
    """Records every command and writes placeholder outputs instead of spawning processes."""

    def __init__(
        self,
        cfg: ToolsConfig | None = None,
        *,
        scene_stderr: str = "",
        fail_when: Callable[[List[str]], bool] | None = None,
    ) -> None:
        super().__init__(cfg or ToolsConfig(ffmpeg="ffmpeg", motion_warp="motion-transfer"))
        self.calls: List[List[str]] = []
        self.scene_stderr = scene_stderr
        self._fail_when = fail_when

    async def run(self, argv: Sequence[str], *, check: bool = True) -> CompletedTool:
        command = [str(part) for part in argv]
        self.calls.append(command)
        if self._fail_when is not None and self._fail_when(command):
            raise ExternalToolFailure(command, 1, "simulated failure")
        if command[-1] == "-" and "null" in command:
            return CompletedTool(command, 0, "", self.scene_stderr)
        if command[0] == self.cfg.motion_warp:
            output = Path(command[command.index("-o") + 1])
        else:
            output = Path(command[-1])
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(f"{Path(command[0]).name}:{output.name}".encode())
        return CompletedTool(command, 0, "", "")

    def warps(self) -> List[List[str]]:
        return [call for call in self.calls if call[0] == self.cfg.motion_warp]

    def outputs(self) -> List[str]:
        names: List[str] = []
        for call in self.calls:
            if call[0] == self.cfg.motion_warp:
                names.append(Path(call[call.index("-o") + 1]).name)
            elif call[-1] != "-":
                names.append(Path(call[-1]).name)
        return names


@dataclass
class Submission:
    host: str
    prefix: str
    image: bytes


@dataclass
class FakeBackends:
    """``httpx.MockTransport`` handler that writes the artifact a real backend would."""

    output_dir: Path
    failing: Set[str] = field(default_factory=set)
    submissions: List[Submission] = field(default_factory=list)
    on_submit: Optional[Callable[[Submission], None]] = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        host = urlsplit(str(request.url)).hostname or ""
        if request.url.path != "/prompt":
            return httpx.Response(404)
        if host in self.failing:
            return httpx.Response(500, json={"error": "backend down"})
        body: Dict[str, Any] = json.loads(request.content)
        graph = body["prompt"]
        prefix = ""
        image = b""
        for node in graph.values():
            inputs = node.get("inputs", {})
            if "filename_prefix" in inputs:
                prefix = inputs["filename_prefix"]
            if node.get("class_type") == "LoadImageBase64":
                image = base64.b64decode(inputs["image_base64"])
        submission = Submission(host=host, prefix=prefix, image=image)
        self.submissions.append(submission)
        if self.on_submit is not None:
            self.on_submit(submission)
        artifact = self.output_dir / f"{prefix}_00001_.png"
        artifact.parent.mkdir(parents=True, exist_ok=True)
        artifact.write_bytes(b"styled:" + image)
        return httpx.Response(200, json={"prompt_id": prefix})

    def hosts(self) -> List[str]:
        return [submission.host for submission in self.submissions]
