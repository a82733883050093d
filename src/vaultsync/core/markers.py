"""Git-style conflict marker parsing.

This module provides:
- analyze: Report on conflict markers embedded in text (never raises)
- resolve: Replace every conflict block with one side (fails fast)
- render_conflict_block: Build a LOCAL/REMOTE marker block

Marker lines are matched whole, after dropping one trailing carriage
return:

    <<<<<<< LOCAL
    local text
    =======
    remote text
    >>>>>>> REMOTE

Both analyze and resolve walk the same three-state machine. analyze
tolerates out-of-sequence markers; resolve refuses to emit anything from
malformed input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, auto

from vaultsync.core.types import MarkerStrategy

START_MARKER = re.compile(r"^<{7}(?: .*)?$")
SEPARATOR_MARKER = re.compile(r"^={7}$")
END_MARKER = re.compile(r"^>{7}(?: .*)?$")

LOCAL_LABEL = "LOCAL"
REMOTE_LABEL = "REMOTE"


class ConflictMarkerError(ValueError):
    """Base error for conflict text that cannot be resolved."""


class MalformedConflictBlockError(ConflictMarkerError):
    """A marker appeared out of sequence."""

    def __init__(self, message: str, line: int) -> None:
        super().__init__(message)
        self.line = line


class IncompleteConflictMarkersError(ConflictMarkerError):
    """Input ended inside an open conflict block."""

    def __init__(self) -> None:
        super().__init__("Conflict markers are incomplete.")


class _Marker(Enum):
    START = auto()
    SEPARATOR = auto()
    END = auto()


class _State(Enum):
    NORMAL = auto()
    IN_LOCAL = auto()
    IN_REMOTE = auto()


@dataclass(frozen=True)
class ConflictMarkerAnalysis:
    """Result of scanning text for conflict markers.

    Attributes:
        conflict_count: Number of complete start/separator/end triples.
        has_conflict_markers: True if any marker line was seen.
        has_unbalanced_markers: True if a marker was out of sequence or a
            block was left open.
        first_marker_line: 1-based line of the first marker, or None.
    """

    conflict_count: int
    has_conflict_markers: bool
    has_unbalanced_markers: bool
    first_marker_line: int | None


@dataclass(frozen=True)
class ConflictMarkerResolution:
    """Text with every conflict block replaced by one side."""

    content: str
    resolved_count: int


def _marker_type(raw_line: str) -> _Marker | None:
    line = raw_line[:-1] if raw_line.endswith("\r") else raw_line
    if START_MARKER.match(line):
        return _Marker.START
    if SEPARATOR_MARKER.match(line):
        return _Marker.SEPARATOR
    if END_MARKER.match(line):
        return _Marker.END
    return None


def analyze(text: str) -> ConflictMarkerAnalysis:
    """Scan text for conflict markers.

    Args:
        text: Arbitrary text.

    Returns:
        ConflictMarkerAnalysis describing the markers found.
    """
    state = _State.NORMAL
    conflict_count = 0
    unbalanced = False
    first_marker_line: int | None = None

    for index, raw_line in enumerate(text.split("\n")):
        marker = _marker_type(raw_line)
        if marker is not None and first_marker_line is None:
            first_marker_line = index + 1

        if state is _State.NORMAL:
            if marker is _Marker.START:
                state = _State.IN_LOCAL
            elif marker is not None:
                unbalanced = True
        elif state is _State.IN_LOCAL:
            if marker is _Marker.SEPARATOR:
                state = _State.IN_REMOTE
            elif marker is not None:
                unbalanced = True
        else:
            if marker is _Marker.END:
                conflict_count += 1
                state = _State.NORMAL
            elif marker is not None:
                unbalanced = True

    if state is not _State.NORMAL:
        unbalanced = True

    return ConflictMarkerAnalysis(
        conflict_count=conflict_count,
        has_conflict_markers=first_marker_line is not None,
        has_unbalanced_markers=unbalanced,
        first_marker_line=first_marker_line,
    )


def has_conflict_markers(text: str) -> bool:
    return analyze(text).has_conflict_markers


def resolve(text: str, strategy: MarkerStrategy | str) -> ConflictMarkerResolution:
    """Replace each conflict block with the chosen side.

    Args:
        text: Text containing conflict blocks.
        strategy: local-first keeps the LOCAL side, remote-first the REMOTE side.

    Returns:
        ConflictMarkerResolution with the reconstructed text.

    Raises:
        MalformedConflictBlockError: A marker appeared out of sequence.
        IncompleteConflictMarkersError: Input ended inside a block.
    """
    keep_local = MarkerStrategy(strategy) is MarkerStrategy.LOCAL_FIRST
    state = _State.NORMAL
    resolved_count = 0
    output: list[str] = []
    local_section: list[str] = []
    remote_section: list[str] = []

    for index, raw_line in enumerate(text.split("\n")):
        marker = _marker_type(raw_line)
        line_number = index + 1

        if state is _State.NORMAL:
            if marker is _Marker.START:
                state = _State.IN_LOCAL
                local_section = []
                remote_section = []
            elif marker is not None:
                raise MalformedConflictBlockError(
                    f"Unexpected conflict marker at line {line_number}.", line_number
                )
            else:
                output.append(raw_line)
        elif state is _State.IN_LOCAL:
            if marker is _Marker.SEPARATOR:
                state = _State.IN_REMOTE
            elif marker is not None:
                raise MalformedConflictBlockError(
                    f"Malformed conflict block near line {line_number}.", line_number
                )
            else:
                local_section.append(raw_line)
        else:
            if marker is _Marker.END:
                output.extend(local_section if keep_local else remote_section)
                resolved_count += 1
                state = _State.NORMAL
            elif marker is not None:
                raise MalformedConflictBlockError(
                    f"Malformed conflict block near line {line_number}.", line_number
                )
            else:
                remote_section.append(raw_line)

    if state is not _State.NORMAL:
        raise IncompleteConflictMarkersError()

    return ConflictMarkerResolution(content="\n".join(output), resolved_count=resolved_count)


def render_conflict_block(local: str, remote: str) -> str:
    """Wrap two whole versions of a file in a single marker block.

    A single trailing newline on each side is folded into the block layout.
    """
    local_body = local[:-1] if local.endswith("\n") else local
    remote_body = remote[:-1] if remote.endswith("\n") else remote
    return (
        f"<<<<<<< {LOCAL_LABEL}\n{local_body}\n=======\n{remote_body}\n>>>>>>> {REMOTE_LABEL}\n"
    )
