"""
External per-feature usage tracker.

Thin httpx client for a check/track usage API plus the reserve/refund meter
built on it. Reservation charges up front (check with send_event) and
refunds whatever did not complete.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from vanda.core.config import settings
from vanda.core.errors import QuotaExceededError, UsageTrackerError
from vanda.core.logging import log_event


@dataclass(frozen=True)
class UsageCheck:
    allowed: bool
    balance: Optional[int]


def remaining_balance(data: Optional[Dict[str, Any]]) -> Optional[int]:
    """Derive remaining units from a tracker payload: balance, else limit - usage."""
    if not data:
        return None
    balance = data.get("balance")
    if isinstance(balance, (int, float)) and not isinstance(balance, bool):
        return max(0, int(balance))

    usage = data.get("usage")
    usage = usage if isinstance(usage, (int, float)) else 0
    limit = data.get("usage_limit")
    if not isinstance(limit, (int, float)):
        limit = data.get("included_usage")
    if not isinstance(limit, (int, float)):
        return None
    return max(0, int(limit - usage))


def normalize_units(count: float) -> int:
    return int(math.ceil(max(0, count)))


class UsageTrackerClient:
    """
    HTTP client for the external usage tracker.

    Endpoints:
    - POST {base}/check  {customer_id, feature_id, required_balance, send_event}
    - POST {base}/track  {customer_id, feature_id, value}
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        base_url = base_url or settings.USAGE_TRACKER_URL
        if not base_url:
            raise UsageTrackerError("USAGE_TRACKER_URL is not configured")
        secret_key = secret_key or settings.USAGE_TRACKER_SECRET_KEY
        headers = {"Accept": "application/json"}
        if secret_key:
            headers["Authorization"] = f"Bearer {secret_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout or settings.USAGE_TRACKER_TIMEOUT_SECONDS,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UsageTrackerError(
                f"Usage tracker {path} failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise UsageTrackerError(f"Usage tracker {path} request failed: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise UsageTrackerError(f"Usage tracker {path} returned invalid JSON") from e

    def check(self, customer_id: str, feature_id: str, required_balance: int, send_event: bool = False) -> UsageCheck:
        data = self._post(
            "/check",
            {
                "customer_id": customer_id,
                "feature_id": feature_id,
                "required_balance": required_balance,
                "send_event": send_event,
            },
        )
        return UsageCheck(allowed=bool(data.get("allowed")), balance=remaining_balance(data))

    def track(self, customer_id: str, feature_id: str, value: int) -> None:
        self._post(
            "/track",
            {"customer_id": customer_id, "feature_id": feature_id, "value": value},
        )


class ExternalUsageMeter:
    """Reserve-then-refund metering against the external tracker."""

    def __init__(self, client: UsageTrackerClient):
        self.client = client

    def close(self) -> None:
        self.client.close()

    def reserve(self, user_id: str, feature_id: str, count: float) -> int:
        """
        Charge `count` units up front.

        Returns:
            Units reserved (0 means nothing was charged)

        Raises:
            QuotaExceededError: If the tracker does not allow the charge
            UsageTrackerError: If the tracker is unreachable or errors
        """
        units = normalize_units(count)
        if units == 0:
            return 0

        result = self.client.check(user_id, feature_id, units, send_event=True)
        if not result.allowed:
            remaining = result.balance if result.balance is not None else 0
            log_event(
                "warning",
                "metering.external_exceeded",
                user_id=user_id,
                feature=feature_id,
                error_code="quota_exceeded",
                extra={"requested": units, "remaining": remaining},
            )
            raise QuotaExceededError(
                f"Insufficient credits. You have {remaining} credit(s), but need {units}.",
                remaining=remaining,
                requested=units,
            )
        return units

    def refund(self, user_id: str, feature_id: str, count: float) -> None:
        """Give back units that were reserved but not used. Failures are logged, not raised."""
        units = normalize_units(count)
        if units == 0:
            return
        try:
            self.client.track(user_id, feature_id, -units)
        except UsageTrackerError as e:
            log_event(
                "error",
                "metering.refund_failed",
                user_id=user_id,
                feature=feature_id,
                error_code=e.code,
                extra={"units": units, "error": e.message},
            )


# Shared meter, rebuilt when the tracker settings change
_meter: Optional[ExternalUsageMeter] = None
_meter_key: Optional[Tuple[Any, ...]] = None


def get_external_meter() -> Optional[ExternalUsageMeter]:
    """Meter backed by the configured tracker, or None when it is not configured."""
    global _meter, _meter_key

    if not settings.USAGE_TRACKER_URL:
        return None

    key = (
        settings.USAGE_TRACKER_URL,
        settings.USAGE_TRACKER_SECRET_KEY,
        settings.USAGE_TRACKER_TIMEOUT_SECONDS,
    )
    if _meter is None or _meter_key != key:
        close_external_meter()
        _meter = ExternalUsageMeter(UsageTrackerClient())
        _meter_key = key
    return _meter


def close_external_meter() -> None:
    """Close the shared meter's connection pool (app shutdown, tests)."""
    global _meter, _meter_key

    if _meter is not None:
        _meter.close()
    _meter = None
    _meter_key = None
