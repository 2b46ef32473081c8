"""Promotion gate: decide from the last verify record whether a run may be promoted."""

from __future__ import annotations

from dataclasses import dataclass

from agency.domain.models import ExecutionRecord
from agency.errors import ErrorCode


@dataclass(frozen=True, slots=True)
class PromotionDecision:
    allowed: bool
    code: ErrorCode | None = None
    reason: str = ""
    forced: bool = False


def evaluate_promotion(
    record: ExecutionRecord | None,
    *,
    force: bool = False,
) -> PromotionDecision:
    """Block unless the last verify passed.

    ``force`` flips ``allowed`` but keeps the blocking code and reason so the
    caller can log what was overridden.
    """

    if record is None:
        code, reason = ErrorCode.SCRIPT_FAILED, "no verify record; run `agency verify` first"
    elif record.ok:
        return PromotionDecision(allowed=True, reason=record.summary)
    elif record.timed_out:
        code, reason = ErrorCode.SCRIPT_TIMEOUT, record.summary or "verify timed out"
    else:
        code, reason = ErrorCode.SCRIPT_FAILED, record.summary or "verify failed"

    return PromotionDecision(allowed=force, code=code, reason=reason, forced=force)


__all__ = ["PromotionDecision", "evaluate_promotion"]
