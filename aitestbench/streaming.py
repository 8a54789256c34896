"""Split streamed response bodies into events and decode their payloads."""

import json
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Literal

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"

_BLANK_LINE = re.compile(r"\r?\n\r?\n")


@dataclass(frozen=True, kw_only=True)
class SseEvent:
    """A server-sent event: a data chunk or the terminal marker."""

    type: Literal["data", "done"]
    payload: str | None = None


@dataclass(frozen=True)
class Parsed:
    """Payload that decoded as JSON."""

    value: Any


@dataclass(frozen=True)
class Raw:
    """Payload that could not be decoded; kept as text."""

    text: str


type Decoded = Parsed | Raw


def parse_sse_events(raw: str) -> Iterator[SseEvent]:
    """Yield the events of an accumulated ``text/event-stream`` body.

    Chunks are separated by blank lines. Chunks that do not start with
    ``data:`` (comments, retry hints, named events) are skipped.
    """
    for chunk in _BLANK_LINE.split(raw):
        line = chunk.strip()
        if not line.startswith(DATA_PREFIX):
            continue
        payload = line.removeprefix(DATA_PREFIX).strip()
        if payload == DONE_MARKER:
            yield SseEvent(type="done")
        else:
            yield SseEvent(type="data", payload=payload)


def parse_jsonl_events(raw: str) -> Iterator[SseEvent]:
    """Yield one data event per non-empty line of a newline-delimited JSON body."""
    for line in raw.splitlines():
        if line := line.strip():
            yield SseEvent(type="data", payload=line)


def decode_json(text: str) -> Decoded:
    """Decode JSON text without raising."""
    try:
        return Parsed(json.loads(text))
    except ValueError:
        return Raw(text)


def decode_payload(payload: str) -> Any:
    """Decoded JSON value of a payload, or ``{"raw": payload}`` when malformed."""
    match decode_json(payload):
        case Parsed(value):
            return value
        case Raw(text):
            return {"raw": text}
