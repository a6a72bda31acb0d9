"""
Quota-gated operations: check before work, charge completed units only.
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from vanda.conftest import MID_MARCH_MS
from vanda.core.errors import (
    MeteredOperationError,
    NotAuthenticatedError,
    QuotaExceededError,
    UsageTrackerError,
    ValidationError,
)
from vanda.features.metering.authority import Feature, MeteringAuthority
from vanda.features.metering.gate import MeteredResult, run_metered, run_metered_async
from vanda.features.usage.service import consume_prompt, ensure_subscription, get_subscription

CAPTION = Feature.CAPTION_GENERATION.value
ANALYSIS = Feature.BRAND_ANALYSIS.value
IMAGE = Feature.IMAGE_GENERATION.value
CHAT_FEATURE = Feature.CHAT.value


def _used(user_id: str) -> int:
    record = get_subscription(user_id)
    return record.prompts_used if record else 0


class TestLedgerGate:
    def test_success_charges_one_unit(self):
        outcome = run_metered(
            "u1",
            lambda: MeteredResult(value="caption", units=1),
            feature=CAPTION,
            now_ms=MID_MARCH_MS,
        )
        assert outcome.value == "caption"
        assert outcome.units_charged == 1
        assert outcome.remaining == 9
        assert outcome.authority is MeteringAuthority.LEDGER
        assert _used("u1") == 1

    def test_first_use_creates_subscription(self):
        run_metered("fresh", lambda: MeteredResult("ok", 1), feature=CHAT_FEATURE, now_ms=MID_MARCH_MS)
        assert get_subscription("fresh").plan == "free"

    def test_partial_success_charges_completed_units(self):
        """Caption ok, image failed -> 1 unit, not 2."""
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 8, now_ms=MID_MARCH_MS)

        outcome = run_metered(
            "u1",
            lambda: MeteredResult(value={"caption": "hi", "image": None}, units=1),
            feature=CAPTION,
            required=2,
            now_ms=MID_MARCH_MS,
        )
        assert outcome.units_charged == 1
        assert outcome.remaining == 1
        assert _used("u1") == 9

    def test_full_success_charges_required(self):
        outcome = run_metered(
            "u1",
            lambda: MeteredResult(value="both", units=2),
            feature=CAPTION,
            required=2,
            now_ms=MID_MARCH_MS,
        )
        assert outcome.remaining == 8

    def test_insufficient_quota_skips_operation(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 9, now_ms=MID_MARCH_MS)
        operation = MagicMock()

        with pytest.raises(QuotaExceededError) as exc_info:
            run_metered("u1", operation, feature=CAPTION, required=2, now_ms=MID_MARCH_MS)

        operation.assert_not_called()
        assert exc_info.value.remaining == 1
        assert exc_info.value.requested == 2
        assert _used("u1") == 9

    def test_exhausted_quota(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 10, now_ms=MID_MARCH_MS)
        with pytest.raises(QuotaExceededError):
            run_metered("u1", MagicMock(), feature=ANALYSIS, now_ms=MID_MARCH_MS)

    def test_failure_charges_nothing_and_propagates(self):
        """The collaborator fails after the check; no credit used."""
        on_failure = MagicMock()

        def scrape():
            raise RuntimeError("profile scrape failed")

        with pytest.raises(MeteredOperationError) as exc_info:
            run_metered("u1", scrape, feature=ANALYSIS, on_failure=on_failure, now_ms=MID_MARCH_MS)

        assert exc_info.value.credit_used is False
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        on_failure.assert_called_once()
        assert isinstance(on_failure.call_args.args[0], RuntimeError)
        assert _used("u1") == 0

    def test_domain_errors_propagate_unchanged(self):
        def collaborator():
            raise ValidationError("bad handle")

        with pytest.raises(ValidationError):
            run_metered("u1", collaborator, feature=ANALYSIS, now_ms=MID_MARCH_MS)
        assert _used("u1") == 0

    def test_failure_hook_errors_do_not_mask_original(self):
        def on_failure(exc):
            raise KeyError("record gone")

        def collaborator():
            raise RuntimeError("llm down")

        with pytest.raises(MeteredOperationError) as exc_info:
            run_metered("u1", collaborator, feature=ANALYSIS, on_failure=on_failure, now_ms=MID_MARCH_MS)
        assert "llm down" in exc_info.value.message

    def test_charge_refused_after_work_runs_failure_hook(self):
        """Another session spends the last unit while the operation runs."""
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 9, now_ms=MID_MARCH_MS)
        on_failure = MagicMock()

        def generate():
            consume_prompt("u1", 1, now_ms=MID_MARCH_MS)
            return MeteredResult("caption", 1)

        with pytest.raises(QuotaExceededError) as exc_info:
            run_metered("u1", generate, feature=CAPTION, on_failure=on_failure, now_ms=MID_MARCH_MS)

        on_failure.assert_called_once_with(exc_info.value)
        assert _used("u1") == 10

    def test_zero_units_charges_nothing(self):
        outcome = run_metered("u1", lambda: MeteredResult(None, 0), feature=CAPTION, now_ms=MID_MARCH_MS)
        assert outcome.units_charged == 0
        assert outcome.remaining == 10
        assert _used("u1") == 0

    @pytest.mark.parametrize("units", [3, -1, 1.0])
    def test_invalid_units_rejected(self, units):
        with pytest.raises(ValidationError):
            run_metered(
                "u1",
                lambda: MeteredResult("x", units),
                feature=CAPTION,
                required=2,
                now_ms=MID_MARCH_MS,
            )
        assert _used("u1") == 0

    @pytest.mark.parametrize("required", [0, -2, True])
    def test_invalid_required_rejected(self, required):
        with pytest.raises(ValidationError):
            run_metered("u1", MagicMock(), feature=CAPTION, required=required)

    def test_anonymous_rejected(self):
        operation = MagicMock()
        with pytest.raises(NotAuthenticatedError):
            run_metered(None, operation, feature=CAPTION)
        operation.assert_not_called()


class TestAsyncGate:
    def test_async_success(self):
        async def generate():
            await asyncio.sleep(0)
            return MeteredResult("caption", 1)

        outcome = asyncio.run(run_metered_async("u1", generate, feature=CAPTION, now_ms=MID_MARCH_MS))
        assert outcome.remaining == 9
        assert _used("u1") == 1

    def test_timeout_counts_as_failure(self):
        on_failure = MagicMock()

        async def slow():
            await asyncio.sleep(5)
            return MeteredResult("late", 1)

        with pytest.raises(MeteredOperationError) as exc_info:
            asyncio.run(
                run_metered_async(
                    "u1", slow, feature=CAPTION, timeout=0.01, on_failure=on_failure, now_ms=MID_MARCH_MS
                )
            )

        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)
        on_failure.assert_called_once()
        assert _used("u1") == 0

    def test_operation_timeout_error_without_deadline(self):
        async def upstream():
            raise TimeoutError("upstream read timed out")

        with pytest.raises(MeteredOperationError) as exc_info:
            asyncio.run(run_metered_async("u1", upstream, feature=CAPTION, now_ms=MID_MARCH_MS))

        assert exc_info.value.message == "caption_generation failed: upstream read timed out"
        assert "None" not in exc_info.value.message
        assert _used("u1") == 0

    def test_cancellation_counts_as_failure(self):
        on_failure = MagicMock()
        started = None

        async def hang():
            started.set()
            await asyncio.sleep(10)
            return MeteredResult("never", 1)

        async def scenario():
            nonlocal started
            started = asyncio.Event()
            task = asyncio.create_task(
                run_metered_async("u1", hang, feature=CAPTION, on_failure=on_failure, now_ms=MID_MARCH_MS)
            )
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        on_failure.assert_called_once()
        assert isinstance(on_failure.call_args.args[0], asyncio.CancelledError)
        assert _used("u1") == 0

    def test_async_quota_exceeded(self):
        ensure_subscription("u1", now_ms=MID_MARCH_MS)
        consume_prompt("u1", 10, now_ms=MID_MARCH_MS)

        async def never():
            raise AssertionError("must not run")

        with pytest.raises(QuotaExceededError):
            asyncio.run(run_metered_async("u1", never, feature=CAPTION, now_ms=MID_MARCH_MS))


class TestExternalAuthorityGate:
    @pytest.fixture(autouse=True)
    def external_images(self, settings_override):
        settings_override(METERING_AUTHORITY_OVERRIDES="image_generation=external")

    def test_reserves_then_refunds_unused(self):
        meter = MagicMock()
        meter.reserve.return_value = 2

        outcome = run_metered(
            "u1",
            lambda: MeteredResult("one image", 1),
            feature=IMAGE,
            required=2,
            meter=meter,
        )

        meter.reserve.assert_called_once_with("u1", "images_generated", 2)
        meter.refund.assert_called_once_with("u1", "images_generated", 1)
        assert outcome.authority is MeteringAuthority.EXTERNAL
        assert outcome.remaining is None
        # Local ledger untouched for externally metered features
        assert get_subscription("u1") is None

    def test_failure_refunds_everything(self):
        meter = MagicMock()
        meter.reserve.return_value = 3

        def generate():
            raise RuntimeError("image model down")

        with pytest.raises(MeteredOperationError):
            run_metered("u1", generate, feature=IMAGE, required=3, meter=meter)

        meter.refund.assert_called_once_with("u1", "images_generated", 3)
        assert get_subscription("u1") is None

    def test_rejection_skips_operation(self):
        meter = MagicMock()
        meter.reserve.side_effect = QuotaExceededError(remaining=0, requested=1)
        operation = MagicMock()

        with pytest.raises(QuotaExceededError):
            run_metered("u1", operation, feature=IMAGE, meter=meter)

        operation.assert_not_called()
        meter.refund.assert_not_called()

    def test_unconfigured_tracker(self, settings_override):
        settings_override(USAGE_TRACKER_URL=None)
        with pytest.raises(UsageTrackerError):
            run_metered("u1", MagicMock(), feature=IMAGE)

    def test_other_features_stay_on_ledger(self):
        meter = MagicMock()
        run_metered("u1", lambda: MeteredResult("c", 1), feature=CAPTION, meter=meter, now_ms=MID_MARCH_MS)
        meter.reserve.assert_not_called()
        assert _used("u1") == 1
