"""
Token metering for image generation.
Decides admission before the upstream call, computes the charge afterwards and
records exactly one job event per attempt.
"""

import uuid
import logging
from typing import Optional

from config import Settings
from db_store import BalanceStore, JobLogStore
from errors import GatewayError, InsufficientBalance
from models import (
    GenerationContext,
    GenerationResult,
    JobEvent,
    JobStatus,
    MeterOutcome,
    ProviderKind,
    TokenUsage,
)

logger = logging.getLogger(__name__)


def _text(value) -> Optional[str]:
    return value if isinstance(value, str) else None


def compute_charge(usage: TokenUsage, kind: Optional[ProviderKind], fallback_estimate: int) -> int:
    """
    Tokens to deduct for one upstream call.

    BYO calls are free for the service balance. When the provider reports no
    usage at all the fixed fallback estimate is charged instead.
    """
    if kind == ProviderKind.BYO:
        return 0
    total = usage.prompt_tokens + usage.completion_tokens
    if total > 0:
        return total
    return fallback_estimate


class MeteringService:
    def __init__(self, settings: Settings, balances: BalanceStore, job_log: JobLogStore):
        self.settings = settings
        self.balances = balances
        self.job_log = job_log

    def compute_charge(self, usage: TokenUsage, kind: Optional[ProviderKind]) -> int:
        return compute_charge(usage, kind, self.settings.fallback_token_estimate)

    def check_balance(self, ctx: GenerationContext) -> int:
        """
        Admission pre-check. Reads the balance into the context snapshot.
        Raises InsufficientBalance below the configured minimum (BYO exempt).
        """
        balance = self.balances.get_balance(ctx.user_id)
        ctx.balance_before = balance
        if ctx.kind == ProviderKind.BYO:
            return balance
        if balance < self.settings.min_balance:
            logger.info(f"Pre-check rejected user {ctx.user_id}: balance {balance} < {self.settings.min_balance}")
            raise InsufficientBalance(balance)
        return balance

    def _base_event(self, ctx: GenerationContext, **fields) -> JobEvent:
        # Rejected requests can carry values of any JSON type
        request = ctx.request
        instruction = _text(request.instruction) or ""
        values = dict(
            user_id=ctx.user_id,
            request_id=_text(request.request_id) or uuid.uuid4().hex,
            batch_id=_text(request.batch_id),
            mode=_text(request.mode) or "batch",
            image_size=_text(request.image_size) or "1K",
            model=ctx.selection.model if ctx.selection else _text(request.model),
            images_submitted=request.image_count,
            instruction_length=len(instruction),
            total_input_bytes=request.total_input_bytes,
            elapsed_ms=ctx.elapsed_ms(),
            token_balance_before=ctx.balance_before,
        )
        values.update(fields)
        return JobEvent(**values)

    def _record(self, event: JobEvent, outcome: MeterOutcome) -> None:
        """Job log writes are advisory; failures are logged, never raised."""
        try:
            self.job_log.record(event)
        except Exception as e:
            logger.error(f"Failed to record job event {event.request_id}: {e}")
            outcome.advisory_errors.append(f"job_log: {e}")

    def meter_success(self, ctx: GenerationContext, result: GenerationResult) -> MeterOutcome:
        """Charge for a completed upstream call (warnings included) and log it."""
        charge = self.compute_charge(result.usage, result.selection.kind)
        before = ctx.balance_before
        new_balance = before
        errors = []

        if charge > 0:
            try:
                decrement = self.balances.decrement(ctx.user_id, charge)
                new_balance = decrement.new_balance
                if not decrement.success:
                    errors.append(f"decrement clamped at zero (wanted {charge})")
            except Exception as e:
                # Generation already happened; an audit gap beats failing the request
                logger.error(f"Token decrement failed for user {ctx.user_id} ({charge} tokens): {e}")
                errors.append(f"decrement: {e}")

        usage = result.usage
        billed_total = usage.total_tokens or charge
        if result.is_warning:
            status = JobStatus.WARNING
            error_code = "NO_IMAGES"
            error_message = result.warning_reason
        else:
            status = JobStatus.SUCCESS
            error_code = None
            error_message = None

        event = self._base_event(
            ctx,
            status=status,
            model=result.selection.model,
            images_returned=len(result.images),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=billed_total,
            elapsed_ms=result.elapsed_ms,
            error_code=error_code,
            error_message=error_message,
            tokens_charged=charge,
            token_balance_after=new_balance,
        )
        outcome = MeterOutcome(new_balance=new_balance, event=event, tokens_charged=charge, advisory_errors=errors)
        self._record(event, outcome)

        logger.info(
            f"Metered {status.value} for user {ctx.user_id}: charged {charge}, "
            f"balance {before} -> {new_balance}"
        )
        return outcome

    def meter_failure(self, ctx: GenerationContext, error: Exception) -> MeterOutcome:
        """Log a failed attempt. Never charges."""
        if isinstance(error, GatewayError):
            error_code = error.error_code
            message = error.message
        else:
            error_code = "500"
            message = str(error) or error.__class__.__name__

        event = self._base_event(
            ctx,
            status=JobStatus.ERROR,
            error_code=error_code,
            error_message=(message or "")[:500],
            tokens_charged=0,
            token_balance_after=ctx.balance_before,
        )
        outcome = MeterOutcome(new_balance=ctx.balance_before, event=event)
        self._record(event, outcome)
        return outcome

    def record_local_operation(
        self,
        user_id: Optional[str],
        request_id: Optional[str] = None,
        image_count: int = 1,
        image_size: str = "1K",
        elapsed_ms: int = 0,
        batch_id: Optional[str] = None,
        mode: str = "resize",
        model: str = "local-resize",
    ) -> MeterOutcome:
        """Zero-cost success event for work done entirely on the client."""
        event = JobEvent(
            user_id=user_id,
            request_id=request_id or uuid.uuid4().hex,
            batch_id=batch_id,
            status=JobStatus.SUCCESS,
            mode=mode,
            image_size=image_size or "1K",
            model=model,
            images_submitted=image_count,
            images_returned=image_count,
            elapsed_ms=elapsed_ms,
            tokens_charged=0,
        )
        outcome = MeterOutcome(new_balance=None, event=event)
        self._record(event, outcome)
        return outcome
