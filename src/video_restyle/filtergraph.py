"""Typed builder for ffmpeg ``-filter_complex`` graphs.

Stages are assembled from :class:`Filter` values, validated (known filter
names, well-formed labels, every intermediate label consumed exactly once),
and only then rendered to ffmpeg's textual syntax.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Final, List, Mapping, Sequence, Tuple, Union

__all__ = [
    "FilterGraph",
    "FilterGraphError",
    "Filter",
    "KNOWN_FILTERS",
    "ffmpeg_argv",
]

ParamValue = Union[int, float, str]

KNOWN_FILTERS: Final[frozenset[str]] = frozenset(
    {
        "alphamerge",
        "blend",
        "dilation",
        "format",
        "lut",
        "null",
        "overlay",
        "select",
        "showinfo",
        "split",
        "unsharp",
    }
)
"""Filters the pipeline is allowed to emit."""

_LABEL_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_STREAM_RE: Final[re.Pattern[str]] = re.compile(r"^(\d+):v$")
_KEY_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z_][a-z0-9_]*$")


class FilterGraphError(ValueError):
    """Raised when a filter graph is malformed."""


def _render_value(value: ParamValue) -> str:
    if isinstance(value, bool):
        raise FilterGraphError("boolean filter parameters are not supported")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value) if value != int(value) else f"{value:.1f}"
    text = str(value)
    if "'" in text:
        raise FilterGraphError(f"parameter value may not contain quotes: {text!r}")
    if re.search(r"[\[\],;:=\\\s]", text):
        return f"'{text}'"
    return text


@dataclass(frozen=True, slots=True)
class Filter:
    """A single filter with positional and named parameters."""

    name: str
    positional: Tuple[ParamValue, ...] = ()
    named: Tuple[Tuple[str, ParamValue], ...] = ()

    @classmethod
    def of(cls, name: str, *positional: ParamValue, **named: ParamValue) -> "Filter":
        return cls(name=name, positional=tuple(positional), named=tuple(named.items()))

    def validate(self) -> None:
        if self.name not in KNOWN_FILTERS:
            raise FilterGraphError(f"unknown filter {self.name!r}")
        for key, _ in self.named:
            if not _KEY_RE.match(key):
                raise FilterGraphError(f"invalid parameter name {key!r} for {self.name}")

    def render(self) -> str:
        parts = [_render_value(value) for value in self.positional]
        parts.extend(f"{key}={_render_value(value)}" for key, value in self.named)
        if not parts:
            return self.name
        return f"{self.name}={':'.join(parts)}"


@dataclass(frozen=True, slots=True)
class _Chain:
    inputs: Tuple[str, ...]
    filters: Tuple[Filter, ...]
    outputs: Tuple[str, ...]


@dataclass
class FilterGraph:
    """An ordered list of filter chains connected by labels."""

    input_count: int
    _chains: List[_Chain] = field(default_factory=list)
    _counter: int = 0

    def label(self, stem: str = "t") -> str:
        """Return a fresh intermediate label."""

        self._counter += 1
        return f"{stem}{self._counter}"

    @staticmethod
    def stream(index: int) -> str:
        return f"{index}:v"

    def chain(
        self,
        inputs: Sequence[str],
        filters: Sequence[Filter],
        outputs: Sequence[str] | str,
    ) -> Tuple[str, ...]:
        """Append ``inputs -> filters -> outputs`` and return the output labels."""

        if isinstance(outputs, str):
            outputs = (outputs,)
        if not filters:
            raise FilterGraphError("a chain needs at least one filter")
        if not outputs:
            raise FilterGraphError("a chain needs at least one output label")
        self._chains.append(_Chain(tuple(inputs), tuple(filters), tuple(outputs)))
        return tuple(outputs)

    def validate(self, final_output: str) -> None:
        produced: Dict[str, int] = {}
        consumed: Dict[str, int] = {}
        for position, chain in enumerate(self._chains):
            for flt in chain.filters:
                flt.validate()
            for label in chain.inputs:
                stream = _STREAM_RE.match(label)
                if stream:
                    if int(stream.group(1)) >= self.input_count:
                        raise FilterGraphError(
                            f"chain {position} reads input {label} but only "
                            f"{self.input_count} input(s) are declared"
                        )
                    continue
                if label not in produced:
                    raise FilterGraphError(f"chain {position} reads undefined label [{label}]")
                consumed[label] = consumed.get(label, 0) + 1
            for label in chain.outputs:
                if not _LABEL_RE.match(label):
                    raise FilterGraphError(f"invalid label [{label}]")
                if label in produced:
                    raise FilterGraphError(f"label [{label}] is produced twice")
                produced[label] = position
        if final_output not in produced:
            raise FilterGraphError(f"final output [{final_output}] is never produced")
        if final_output in consumed:
            raise FilterGraphError(f"final output [{final_output}] may not feed another chain")
        for label in produced:
            if label == final_output:
                continue
            uses = consumed.get(label, 0)
            if uses != 1:
                raise FilterGraphError(f"label [{label}] is consumed {uses} times (expected 1)")

    def render(self, final_output: str) -> str:
        self.validate(final_output)
        rendered: List[str] = []
        for chain in self._chains:
            head = "".join(f"[{label}]" for label in chain.inputs)
            body = ",".join(flt.render() for flt in chain.filters)
            tail = "".join(f"[{label}]" for label in chain.outputs)
            rendered.append(f"{head}{body}{tail}")
        return ";".join(rendered)

    def describe(self) -> List[Mapping[str, object]]:
        """Structured view of the stages, handy for logging and tests."""

        return [
            {
                "inputs": list(chain.inputs),
                "filters": [flt.name for flt in chain.filters],
                "rendered": [flt.render() for flt in chain.filters],
                "outputs": list(chain.outputs),
            }
            for chain in self._chains
        ]


def ffmpeg_argv(
    ffmpeg: str,
    inputs: Sequence[Path],
    graph: FilterGraph,
    final_output: str,
    output: Path,
) -> List[str]:
    """Assemble the full ffmpeg command line for a single-image filter graph."""

    if len(inputs) != graph.input_count:
        raise FilterGraphError(
            f"graph declares {graph.input_count} input(s) but {len(inputs)} were supplied"
        )
    argv: List[str] = [ffmpeg, "-loglevel", "error"]
    for path in inputs:
        argv.extend(["-i", str(path)])
    argv.extend(
        [
            "-filter_complex",
            graph.render(final_output),
            "-map",
            f"[{final_output}]",
            "-y",
            "-update",
            "1",
            str(output),
        ]
    )
    return argv
