"""Derive timing and throughput metrics from raw timestamps.

Not every server exposes token level timing, so any figure that cannot be
computed is left as ``None`` and, where the caller must be able to tell
"unknown" from "zero", explained in ``not_measurable``.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

TOKEN_TIMESTAMPS_UNAVAILABLE = "Token timestamps unavailable"
MISSING_DECODE_DURATION = "Missing decode duration"


@dataclass(frozen=True, kw_only=True)
class MetricResult:
    """Metrics of one exchange; all durations in milliseconds."""

    ttfb_ms: float | None = None
    total_ms: float | None = None
    prefill_ms: float | None = None
    decode_ms: float | None = None
    tokens_per_sec: float | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    not_measurable: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialise, dropping ``not_measurable`` when nothing is flagged."""
        data: dict[str, Any] = {
            "ttfb_ms": self.ttfb_ms,
            "total_ms": self.total_ms,
            "prefill_ms": self.prefill_ms,
            "decode_ms": self.decode_ms,
            "tokens_per_sec": self.tokens_per_sec,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
        }
        if self.not_measurable:
            data["not_measurable"] = dict(self.not_measurable)
        return data


def compute_metrics(
    *,
    request_started_at: float,
    first_token_at: float | None = None,
    completed_at: float | None = None,
    prompt_tokens: int | None = None,
    completion_tokens: int | None = None,
) -> MetricResult:
    """Compute metrics from timestamps (ms) and optional token counts."""
    not_measurable: dict[str, str] = {}
    ttfb_ms = total_ms = prefill_ms = decode_ms = tokens_per_sec = None

    if first_token_at is not None:
        ttfb_ms = first_token_at - request_started_at

    if completed_at is not None:
        total_ms = completed_at - request_started_at

        if first_token_at is not None:
            prefill_ms = first_token_at - request_started_at
            decode_ms = completed_at - first_token_at
        else:
            prefill_ms = total_ms
            not_measurable["decode_ms"] = TOKEN_TIMESTAMPS_UNAVAILABLE

    if completion_tokens is not None:
        if decode_ms is not None and decode_ms > 0:
            tokens_per_sec = completion_tokens / decode_ms * 1000
        else:
            not_measurable["tokens_per_sec"] = MISSING_DECODE_DURATION

    return MetricResult(
        ttfb_ms=ttfb_ms,
        total_ms=total_ms,
        prefill_ms=prefill_ms,
        decode_ms=decode_ms,
        tokens_per_sec=tokens_per_sec,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        not_measurable=not_measurable,
    )
