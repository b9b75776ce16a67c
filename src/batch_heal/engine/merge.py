"""Mergers that turn ordered unit results into the final output."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from batch_heal.engine.models import UnitResult, WorkUnit


def collect_payloads(units: Sequence[WorkUnit], results: Sequence[UnitResult]) -> list[Any]:
    """Default merger: payloads in unit order."""

    _ensure_aligned(units, results)
    return [result.payload for result in results]


def merge_transcripts(
    units: Sequence[WorkUnit],
    results: Sequence[UnitResult],
) -> dict[str, Any]:
    """Join per-chunk transcripts, re-anchoring segment times on the source timeline.

    Each payload is expected to look like a verbose transcription response:
    ``{"text": str, "segments": [{"start": float, "text": str}, ...]}``.
    """

    _ensure_aligned(units, results)
    texts: list[str] = []
    segments: list[dict[str, Any]] = []
    for unit, result in zip(units, results, strict=True):
        payload = result.payload if isinstance(result.payload, dict) else {}
        for segment in payload.get("segments") or []:
            start = float(segment.get("start", 0.0)) + unit.sequence_offset
            segments.append(
                {
                    "timestamp": format_timestamp(start),
                    "start_seconds": start,
                    "text": str(segment.get("text", "")).strip(),
                },
            )
        text = str(payload.get("text", "")).strip()
        if text:
            texts.append(text)
    return {"full_text": " ".join(texts), "segments": segments}


def format_timestamp(seconds: float) -> str:
    """``H:MM:SS`` when at least an hour in, ``M:SS`` otherwise."""

    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


_VTT_CUE_TIMING = re.compile(
    r"((?:\d{2,}:)?\d{2}:\d{2}\.\d{3})\s+-->\s+((?:\d{2,}:)?\d{2}:\d{2}\.\d{3})",
)
_VTT_CUE_NUMBER = re.compile(r"^\d+$")


def parse_vtt(content: str) -> dict[str, Any]:
    """Read an existing WebVTT transcript into the merged transcript shape.

    Lets a caller skip transcription entirely when subtitles already exist.
    Cue numbers and the ``WEBVTT`` header are dropped, and multi-line cues are
    joined with spaces. Cues without text are skipped.
    """

    segments: list[dict[str, Any]] = []
    current_start: float | None = None
    current_text: list[str] = []

    def flush() -> None:
        if current_start is not None and current_text:
            segments.append(
                {
                    "timestamp": format_timestamp(current_start),
                    "start_seconds": current_start,
                    "text": " ".join(current_text),
                },
            )

    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or "WEBVTT" in stripped:
            continue
        timing = _VTT_CUE_TIMING.search(stripped)
        if timing is not None:
            flush()
            current_start = parse_vtt_timestamp(timing.group(1))
            current_text = []
        elif current_start is not None and not _VTT_CUE_NUMBER.match(stripped):
            current_text.append(stripped)
    flush()

    return {
        "full_text": " ".join(segment["text"] for segment in segments),
        "segments": segments,
    }


def parse_vtt_timestamp(value: str) -> float:
    """``HH:MM:SS.mmm`` or ``MM:SS.mmm`` to seconds."""

    seconds = 0.0
    for part in value.split(":"):
        seconds = seconds * 60 + float(part)
    return seconds


def render_transcript_text(merged: dict[str, Any]) -> str:
    return "\n\n".join(f"[{seg['timestamp']}] {seg['text']}" for seg in merged["segments"])


def _ensure_aligned(units: Sequence[WorkUnit], results: Sequence[UnitResult]) -> None:
    if len(units) != len(results):
        raise ValueError(f"Expected {len(units)} results, got {len(results)}")
    for unit, result in zip(units, results, strict=True):
        if unit.index != result.index:
            raise ValueError(f"Result {result.index} is out of order at unit {unit.index}")
