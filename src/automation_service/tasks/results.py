"""Explicit outcome type passed between execution stages."""

from __future__ import annotations

import logging
import traceback
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """``ok`` with ``data``, or not ok with ``error`` and its traceback."""

    ok: bool
    data: T | None = None
    error: str | None = None
    stage: str | None = None
    trace: str | None = field(default=None, repr=False)

    @classmethod
    def success(cls, data: T | None = None, *, stage: str | None = None) -> StageResult[T]:
        return cls(ok=True, data=data, stage=stage)

    @classmethod
    def failure(cls, exc: BaseException, *, stage: str | None = None) -> StageResult[T]:
        return cls(
            ok=False,
            error=str(exc) or exc.__class__.__name__,
            stage=stage,
            trace="".join(traceback.format_exception(exc)),
        )


async def run_stage(stage: str, awaitable: Awaitable[T]) -> StageResult[T]:
    """Await one pipeline stage and convert any exception into a failed result."""
    try:
        data = await awaitable
    except Exception as exc:  # noqa: BLE001
        logger.warning("task_stage event=failed stage=%s reason=%s", stage, exc)
        return StageResult.failure(exc, stage=stage)
    return StageResult.success(data, stage=stage)
