"""Async wrappers around the external ffmpeg and motion-warp executables."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from src.datatypes import ToolsConfig
from src.video_restyle.errors import ExternalToolFailure
from src.video_restyle.filtergraph import FilterGraph, ffmpeg_argv

__all__ = [
    "CompletedTool",
    "ToolRunner",
    "motion_warp_argv",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CompletedTool:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str


def motion_warp_argv(tool: str, chain: Sequence[Path], style: Path, output: Path) -> List[str]:
    """``<tool> -m <frame_1> ... <frame_k> -i <style> -o <output>``."""

    if len(chain) < 2:
        raise ValueError("motion warp needs at least two frames in its chain")
    argv = [tool, "-m"]
    argv.extend(str(path) for path in chain)
    argv.extend(["-i", str(style), "-o", str(output)])
    return argv


class ToolRunner:
    """Runs external tools as subprocesses without blocking the event loop."""

    def __init__(self, cfg: ToolsConfig) -> None:
        self.cfg = cfg

    async def run(self, argv: Sequence[str], *, check: bool = True) -> CompletedTool:
        """
        Execute ``argv`` and collect its output.

        Non-zero exits raise :class:`ExternalToolFailure` when ``check`` is set;
        ``tools.timeout_seconds`` (when non-zero) kills the process and raises
        the same error with ``returncode=None``.
        """

        command = [str(part) for part in argv]
        logger.info("%s", shlex.join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExternalToolFailure(
                command, None, reason=f"could not be started: {exc.strerror or exc}"
            ) from exc
        timeout = self.cfg.timeout_seconds or None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ExternalToolFailure(command, None) from exc
        completed = CompletedTool(
            argv=command,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and completed.returncode != 0:
            raise ExternalToolFailure(command, completed.returncode, completed.stderr)
        return completed

    async def ffmpeg(
        self,
        inputs: Sequence[Path],
        graph: FilterGraph,
        final_output: str,
        output: Path,
    ) -> Path:
        output.parent.mkdir(parents=True, exist_ok=True)
        await self.run(ffmpeg_argv(self.cfg.ffmpeg, inputs, graph, final_output, output))
        return output

    async def motion_warp(self, chain: Sequence[Path], style: Path, output: Path) -> Path:
        """Warp ``style`` (aligned to ``chain[0]``) along ``chain`` into ``output``."""

        output.parent.mkdir(parents=True, exist_ok=True)
        await self.run(motion_warp_argv(self.cfg.motion_warp, chain, style, output))
        return output
