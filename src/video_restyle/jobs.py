"""Restyle job construction, submission and filesystem completion detection."""

from __future__ import annotations

import asyncio
import base64
import copy
import json
import logging
import secrets
import shutil
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import httpx

from src.datatypes import BackendsConfig, PollingConfig
from src.video_restyle.backends import Backend
from src.video_restyle.errors import ArtifactTimeoutError, BackendFailure
from src.video_restyle.net import BackoffError, httpx_post_json_with_backoff, redact_url_for_logs

__all__ = [
    "DIRECTIVE_KEY",
    "JobSubmitter",
    "PromptTemplate",
    "RestyleJob",
    "TemplateError",
    "artifact_name",
    "build_job_graph",
    "describe_job",
    "new_output_prefix",
    "wait_for_file",
]

logger = logging.getLogger(__name__)

DIRECTIVE_KEY = "stable-restyle"
"""Top-level template entry naming the input, mask and output nodes."""

ARTIFACT_SUFFIX = "_00001_.png"
"""Suffix the backend appends to the filename prefix of its first output image."""


class TemplateError(ValueError):
    """Raised when a job graph template is missing its directive or node references."""


@dataclass(frozen=True, slots=True)
class PromptTemplate:
    """A parsed job graph template plus the node ids its directive designates."""

    path: Path
    graph: Mapping[str, Any]
    inputs: tuple[str, ...]
    mask: str
    output: str

    @classmethod
    def load(cls, path: Path) -> "PromptTemplate":
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise TemplateError(f"Unable to read template {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise TemplateError(f"Template {path} is not valid JSON: {exc}") from exc
        return cls.from_document(document, path=path)

    @classmethod
    def from_document(cls, document: Any, *, path: Path = Path("<memory>")) -> "PromptTemplate":
        if not isinstance(document, dict):
            raise TemplateError(f"Template {path} must be a JSON object")
        graph = dict(document)
        directive = graph.pop(DIRECTIVE_KEY, None)
        if not isinstance(directive, dict):
            raise TemplateError(f"Template {path} is missing the '{DIRECTIVE_KEY}' entry")
        raw_inputs = directive.get("input")
        if isinstance(raw_inputs, str):
            inputs: tuple[str, ...] = (raw_inputs,)
        elif isinstance(raw_inputs, list) and raw_inputs and all(isinstance(i, str) for i in raw_inputs):
            inputs = tuple(raw_inputs)
        else:
            raise TemplateError(f"Template {path}: '{DIRECTIVE_KEY}.input' must name a node or list of nodes")
        mask = directive.get("mask")
        output = directive.get("output")
        if not isinstance(mask, str) or not isinstance(output, str):
            raise TemplateError(f"Template {path}: '{DIRECTIVE_KEY}' must name 'mask' and 'output' nodes")
        for node_id in (*inputs, mask, output):
            node = graph.get(node_id)
            if not isinstance(node, dict) or not isinstance(node.get("inputs"), dict):
                raise TemplateError(f"Template {path}: node {node_id!r} is missing or has no 'inputs' table")
        return cls(path=path, graph=graph, inputs=inputs, mask=mask, output=output)


@dataclass(slots=True)
class RestyleJob:
    """One restyle request: repaint ``image`` under ``mask`` into ``output``."""

    slide: int
    template: PromptTemplate
    image: Path
    mask: Path
    output: Path


def new_output_prefix() -> str:
    """Return a filename token unique enough to keep concurrent jobs apart."""

    return secrets.token_hex(12)


def artifact_name(prefix: str) -> str:
    return f"{prefix}{ARTIFACT_SUFFIX}"


def _encode_image(path: Path) -> str:
    return base64.b64encode(path.read_bytes()).decode("ascii")


def build_job_graph(
    template: PromptTemplate,
    image: Path,
    mask: Path,
    filename_prefix: str,
) -> Dict[str, Any]:
    """
    Fill a copy of ``template`` for one job.

    Every designated input node receives the base64 image, the mask node the
    base64 mask, and the output node the unique filename prefix. The template
    itself is never mutated.
    """

    graph: Dict[str, Any] = copy.deepcopy(dict(template.graph))
    image_payload = _encode_image(image)
    for node_id in template.inputs:
        graph[node_id]["inputs"]["image_base64"] = image_payload
    graph[template.mask]["inputs"]["image_base64"] = _encode_image(mask)
    graph[template.output]["inputs"]["filename_prefix"] = filename_prefix
    return graph


async def wait_for_file(
    path: Path,
    *,
    interval: float,
    settle: float,
    max_wait: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """
    Poll until ``path`` exists, then wait ``settle`` seconds more.

    ``max_wait`` of zero polls forever; otherwise :class:`ArtifactTimeoutError`
    is raised once the bound is exceeded.
    """

    sleep_impl = sleep or asyncio.sleep
    started = clock()
    while not path.exists():
        if max_wait > 0 and clock() - started >= max_wait:
            raise ArtifactTimeoutError(f"{path.name} did not appear within {max_wait:.0f}s")
        await sleep_impl(interval)
    if settle > 0:
        await sleep_impl(settle)


class JobSubmitter:
    """Submits restyle jobs to a backend and waits for the artifact on disk."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        backends_cfg: BackendsConfig,
        polling_cfg: PollingConfig,
        *,
        root: Path,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        prefix_factory: Callable[[], str] = new_output_prefix,
    ) -> None:
        self._client = client
        self._backends_cfg = backends_cfg
        self._polling_cfg = polling_cfg
        output_dir = Path(backends_cfg.output_dir)
        self.output_dir = output_dir if output_dir.is_absolute() else root / output_dir
        self._sleep = sleep
        self._prefix_factory = prefix_factory
        self.submitted: List[int] = []

    async def __call__(self, backend: Backend, job: RestyleJob) -> Path:
        return await self.submit(backend, job)

    async def submit(self, backend: Backend, job: RestyleJob) -> Path:
        """
        Run ``job`` on ``backend`` and return the final output path.

        An output that already exists short-circuits the job entirely, which
        keeps re-runs over a partially completed workspace incremental.
        """

        if job.output.exists():
            logger.debug("Slide %d already present at %s; skipping", job.slide, job.output)
            return job.output

        prefix = f"{self._backends_cfg.prefix_dir}/{self._prefix_factory()}"
        artifact = self.output_dir / artifact_name(prefix)
        graph = build_job_graph(job.template, job.image, job.mask, prefix)
        await self._send(backend, graph)
        self.submitted.append(job.slide)
        await wait_for_file(
            artifact,
            interval=self._polling_cfg.interval_seconds,
            settle=self._polling_cfg.settle_seconds,
            max_wait=self._polling_cfg.max_wait_seconds,
            sleep=self._sleep,
        )
        job.output.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(artifact), str(job.output))
        logger.info("Slide %d restyled on %s", job.slide, redact_url_for_logs(backend.endpoint))
        return job.output

    async def _send(self, backend: Backend, graph: MutableMapping[str, Any]) -> None:
        url = f"{backend.endpoint}/prompt"
        try:
            await httpx_post_json_with_backoff(
                self._client,
                url,
                {"prompt": graph},
                retries=self._backends_cfg.submit_retries,
                sleep=self._sleep,
            )
        except BackoffError as exc:
            raise BackendFailure(str(exc), endpoint=backend.endpoint) from exc
        except httpx.HTTPError as exc:
            raise BackendFailure(
                f"{type(exc).__name__}: {exc}", endpoint=backend.endpoint
            ) from exc


def describe_job(job: RestyleJob, backend: Optional[Backend] = None) -> str:
    where = f" on {backend.label}" if backend is not None else ""
    return f"slide {job.slide} ({job.template.path.name}){where}"
