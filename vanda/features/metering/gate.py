"""
Quota-gated operation wrapper.

Every billed capability (brand analysis, caption generation, image
generation, chat) goes through the same sequence:

1. Require a caller identity.
2. ensure_subscription(user_id).
3. check_quota(user_id); refuse before doing any paid work if fewer than
   `required` units remain.
4. Run the metered operation (LLM call, image generation, scrape). No
   ledger lock is held while it runs.
5. On success, consume_prompt(user_id, units) where units is what actually
   completed (caption ok + image failed -> 1, not 2).
6. On failure, consume nothing, let the caller mark partial state failed,
   and propagate the error.

Features whose authority is the external tracker reserve up front and
refund unused units instead; the local ledger is not touched for them.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from vanda.core.errors import (
    AppError,
    MeteredOperationError,
    NotAuthenticatedError,
    QuotaExceededError,
    UsageTrackerError,
    ValidationError,
)
from vanda.core.logging import log_event
from vanda.features.metering.authority import (
    MeteringAuthority,
    authority_for,
    external_feature_id,
)
from vanda.features.metering.external import ExternalUsageMeter, get_external_meter
from vanda.features.usage.service import check_quota, consume_prompt, ensure_subscription

T = TypeVar("T")

FailureHook = Callable[[BaseException], Any]


@dataclass(frozen=True)
class MeteredResult(Generic[T]):
    """What a metered collaborator returns: its value and the billable units it completed."""
    value: T
    units: int


@dataclass(frozen=True)
class MeteredOutcome(Generic[T]):
    value: T
    units_charged: int
    remaining: Optional[int]
    authority: MeteringAuthority


class _MeteredRun:
    """Shared bookkeeping for the sync and async wrappers."""

    def __init__(
        self,
        user_id: Optional[str],
        feature: str,
        required: int,
        on_failure: Optional[FailureHook],
        meter: Optional[ExternalUsageMeter],
        now_ms: Optional[int],
    ):
        if not user_id:
            raise NotAuthenticatedError()
        if isinstance(required, bool) or not isinstance(required, int) or required < 1:
            raise ValidationError(f"required must be a positive integer, got {required!r}")
        self.user_id = user_id
        self.feature = feature
        self.required = required
        self.on_failure = on_failure
        self.now_ms = now_ms
        self.authority = authority_for(feature)
        self.meter = meter
        self.reserved = 0

    def before(self) -> None:
        """Steps 2-3: make sure the caller can afford `required` units."""
        if self.authority is MeteringAuthority.EXTERNAL:
            if self.meter is None:
                self.meter = get_external_meter()
            if self.meter is None:
                raise UsageTrackerError("External usage tracker is not configured")
            self.reserved = self.meter.reserve(
                self.user_id, external_feature_id(self.feature), self.required
            )
        else:
            ensure_subscription(self.user_id, now_ms=self.now_ms)
            quota = check_quota(self.user_id, now_ms=self.now_ms)
            remaining = quota.remaining if quota else 0
            if remaining < self.required:
                log_event(
                    "warning",
                    "metered.quota_exceeded",
                    user_id=self.user_id,
                    feature=self.feature,
                    error_code="quota_exceeded",
                    extra={"required": self.required, "remaining": remaining},
                )
                raise QuotaExceededError(
                    "No prompts remaining. Please upgrade your plan.",
                    remaining=remaining,
                    requested=self.required,
                )

        log_event(
            "info",
            "metered.started",
            user_id=self.user_id,
            feature=self.feature,
            extra={"required": self.required, "authority": self.authority.value},
        )

    def succeeded(self, result: MeteredResult) -> MeteredOutcome:
        """Step 5: charge exactly the completed units."""
        units = result.units
        if isinstance(units, bool) or not isinstance(units, int) or units < 0 or units > self.required:
            self._release_reservation()
            raise ValidationError(
                f"{self.feature} reported {units!r} billable units; expected 0..{self.required}"
            )

        remaining: Optional[int] = None
        if self.authority is MeteringAuthority.EXTERNAL:
            self.meter.refund(
                self.user_id, external_feature_id(self.feature), self.reserved - units
            )
        elif units > 0:
            try:
                remaining = consume_prompt(self.user_id, units, now_ms=self.now_ms).remaining
            except Exception as exc:
                # Work is done but the charge was refused (quota spent meanwhile)
                self.failed(exc)
                raise
        else:
            quota = check_quota(self.user_id, now_ms=self.now_ms)
            remaining = quota.remaining if quota else None

        log_event(
            "info",
            "metered.completed",
            user_id=self.user_id,
            feature=self.feature,
            extra={"units": units, "required": self.required, "remaining": remaining},
        )
        return MeteredOutcome(
            value=result.value,
            units_charged=units,
            remaining=remaining,
            authority=self.authority,
        )

    def failed(self, exc: BaseException) -> None:
        """Step 6: nothing is charged; give the caller a chance to mark partial state failed."""
        self._release_reservation()
        log_event(
            "warning",
            "metered.failed",
            user_id=self.user_id,
            feature=self.feature,
            error_code=getattr(exc, "code", type(exc).__name__),
            extra={"error": exc, "credit_used": False},
        )
        if self.on_failure is not None:
            try:
                self.on_failure(exc)
            except Exception as hook_error:
                log_event(
                    "error",
                    "metered.failure_hook_error",
                    user_id=self.user_id,
                    feature=self.feature,
                    extra={"error": hook_error},
                )

    def _release_reservation(self) -> None:
        if self.authority is MeteringAuthority.EXTERNAL and self.reserved and self.meter:
            self.meter.refund(self.user_id, external_feature_id(self.feature), self.reserved)
            self.reserved = 0

    def wrap(self, exc: Exception) -> AppError:
        if isinstance(exc, AppError):
            return exc
        return MeteredOperationError(f"{self.feature} failed: {exc}")


def run_metered(
    user_id: Optional[str],
    operation: Callable[[], MeteredResult[T]],
    *,
    feature: str,
    required: int = 1,
    on_failure: Optional[FailureHook] = None,
    meter: Optional[ExternalUsageMeter] = None,
    now_ms: Optional[int] = None,
) -> MeteredOutcome[T]:
    """
    Run `operation` under the quota gate.

    Args:
        user_id: Caller identity (None -> NotAuthenticatedError)
        operation: Collaborator doing the paid work; returns MeteredResult
        feature: Feature key, decides which counter is authoritative
        required: Units that must be available before starting
        on_failure: Called with the error when the operation fails

    Raises:
        NotAuthenticatedError, QuotaExceededError: before any paid work
        MeteredOperationError: the operation raised a non-domain error
    """
    run = _MeteredRun(user_id, feature, required, on_failure, meter, now_ms)
    run.before()
    try:
        result = operation()
    except Exception as exc:
        run.failed(exc)
        wrapped = run.wrap(exc)
        if wrapped is exc:
            raise
        raise wrapped from exc
    return run.succeeded(result)


async def run_metered_async(
    user_id: Optional[str],
    operation: Callable[[], Awaitable[MeteredResult[T]]],
    *,
    feature: str,
    required: int = 1,
    on_failure: Optional[FailureHook] = None,
    meter: Optional[ExternalUsageMeter] = None,
    timeout: Optional[float] = None,
    now_ms: Optional[int] = None,
) -> MeteredOutcome[T]:
    """
    Coroutine variant of run_metered.

    A timeout or cancellation counts as failure: nothing is consumed and
    on_failure runs. Cancellation is re-raised unchanged.
    """
    run = _MeteredRun(user_id, feature, required, on_failure, meter, now_ms)
    run.before()
    try:
        if timeout is not None:
            result = await asyncio.wait_for(operation(), timeout=timeout)
        else:
            result = await operation()
    except asyncio.CancelledError as exc:
        run.failed(exc)
        raise
    except asyncio.TimeoutError as exc:
        run.failed(exc)
        if timeout is None:
            raise run.wrap(exc) from exc
        raise MeteredOperationError(f"{feature} timed out after {timeout}s") from exc
    except Exception as exc:
        run.failed(exc)
        wrapped = run.wrap(exc)
        if wrapped is exc:
            raise
        raise wrapped from exc
    return run.succeeded(result)
