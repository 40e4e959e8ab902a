"""Generation state machine: `pending -> processing -> completed | failed`.

Entering `failed` always asks the ledger for a refund; the refund is
idempotent, so it is also re-attempted when a failure is re-delivered or a
failed job is reset. Retrying is a reset back to `pending` only: credits are
reserved again by the next explicit `start`.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from creditflow.common import events
from creditflow.common.db import run_with_retry, utcnow
from creditflow.common.errors import (
    ConcurrencyConflict,
    ConflictError,
    InvalidTransition,
    NotFoundError,
    RetryLimitExceeded,
    ValidationError,
)
from creditflow.common.logging import account_id_ctx, logger
from creditflow.common.metrics import generation_e2e_seconds
from creditflow.common.outbox import enqueue_event
from creditflow.common.state_machine import GENERATION_TRANSITIONS, validate_transition
from creditflow.services.generations.models import Generation
from creditflow.services.ledger import schemas as ledger_schemas
from creditflow.services.ledger.models import Account
from creditflow.services.ledger.schemas import LedgerResult
from creditflow.services.ledger.service import LedgerService
from creditflow.services.webhooks.schemas import GenerationFailed, GenerationSucceeded

COMPLETED = "completed"
ALREADY_COMPLETED = "already_completed"


class GenerationService:
    """Owns generation lifecycle and its credit compensation."""

    def __init__(
        self,
        session_factory,
        ledger: LedgerService,
        max_retries: int = 3,
        stale_after_seconds: int = 1800,
        default_cost: int = 1,
        service_name: str = "ledger",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.max_retries = max_retries
        self.stale_after_seconds = stale_after_seconds
        self.default_cost = default_cost
        self.service_name = service_name

    def create_generation(self, account_id: str, credits: int | None = None) -> Generation:
        cost = self.default_cost if credits is None else credits
        if cost <= 0:
            raise ValidationError("credits must be positive")
        with self.session_factory() as db:
            if db.get(Account, account_id) is None:
                raise NotFoundError(f"account {account_id} not found")
            generation = Generation(account_id=account_id, status="pending", credits_reserved=cost, credits_used=0)
            db.add(generation)
            db.commit()
            logger.info("generation_created generation_id=%s account_id=%s cost=%s", generation.id, account_id, cost)
            return generation

    def get_generation(self, generation_id: str) -> Generation:
        with self.session_factory() as db:
            generation = db.get(Generation, generation_id)
        if generation is None:
            raise NotFoundError(f"generation {generation_id} not found")
        return generation

    def _load(self, db, generation_id: str) -> Generation:
        generation = db.get(Generation, generation_id)
        if generation is None:
            raise NotFoundError(f"generation {generation_id} not found")
        return generation

    def _transition(self, db, generation: Generation, new_status: str, reason: str, **values) -> None:
        """Apply one validated transition guarded by `(id, status, version)`."""

        previous_status, expected_version = generation.status, generation.version
        validate_transition(GENERATION_TRANSITIONS, previous_status, new_status)
        result = db.execute(
            update(Generation)
            .where(
                Generation.id == generation.id,
                Generation.status == previous_status,
                Generation.version == expected_version,
            )
            .values(status=new_status, version=Generation.version + 1, updated_at=utcnow(), **values)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"optimistic concurrency conflict for generation {generation.id} "
                f"(expected version {expected_version})"
            )
        logger.info(
            "generation_transition generation_id=%s from=%s to=%s reason=%s",
            generation.id,
            previous_status,
            new_status,
            reason,
        )

    def _observe_terminal(self, generation: Generation, terminal_state: str) -> None:
        started = generation.processing_started_at
        if started is None:
            return
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - started).total_seconds())
        generation_e2e_seconds.labels(service=self.service_name, terminal_state=terminal_state).observe(elapsed)

    def start(self, generation_id: str) -> LedgerResult:
        """Reserve credits, then move `pending -> processing`.

        Without a successful reservation the generation stays `pending` and
        must not be dispatched. `already_reserved` means an earlier start
        debited the credits but did not commit the transition; it proceeds
        without a second debit.
        """

        generation = self.get_generation(generation_id)
        if generation.status != "pending":
            raise InvalidTransition(f"Invalid transition: {generation.status} -> processing")
        account_id_ctx.set(generation.account_id)
        result = self.ledger.consume_credits(generation.account_id, generation.id, generation.credits_reserved)
        if result.outcome not in (ledger_schemas.CONSUMED, ledger_schemas.ALREADY_RESERVED):
            logger.info("generation_start_rejected generation_id=%s outcome=%s", generation_id, result.outcome)
            return result

        def _begin() -> None:
            with self.session_factory() as db:
                current = self._load(db, generation_id)
                if current.status == "processing":
                    return
                self._transition(db, current, "processing", reason="credits_reserved", processing_started_at=utcnow())
                db.commit()

        run_with_retry(_begin)
        return result

    def attach_task(self, generation_id: str, provider_task_id: str) -> Generation:
        """Record the provider task id returned by dispatch."""

        with self.session_factory() as db:
            generation = self._load(db, generation_id)
            if generation.provider_task_id == provider_task_id:
                return generation
            if generation.status != "processing" or generation.provider_task_id is not None:
                raise ConflictError(
                    f"generation {generation_id} cannot take task {provider_task_id} "
                    f"(status={generation.status}, task={generation.provider_task_id})"
                )
            result = db.execute(
                update(Generation)
                .where(Generation.id == generation_id, Generation.provider_task_id.is_(None))
                .values(provider_task_id=provider_task_id, version=Generation.version + 1, updated_at=utcnow())
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(f"generation {generation_id} task id changed concurrently")
            db.commit()
            db.expire_all()
            return self._load(db, generation_id)

    def _find_by_task(self, db, provider_task_id: str) -> Generation:
        generation = db.execute(
            select(Generation).where(Generation.provider_task_id == provider_task_id)
        ).scalar_one_or_none()
        if generation is None:
            raise NotFoundError(f"no generation for provider task {provider_task_id}")
        return generation

    def complete(self, event: GenerationSucceeded) -> str:
        """`processing -> completed` for the generation owning `event.task_id`."""

        with self.session_factory() as db:
            generation = self._find_by_task(db, event.task_id)
            account_id_ctx.set(generation.account_id)
            if generation.status == "completed":
                return ALREADY_COMPLETED
            creation = event.creation
            now = utcnow()
            self._transition(
                db,
                generation,
                "completed",
                reason="provider_success",
                provider_creation_id=creation.id,
                video_url=creation.url,
                cover_url=creation.cover_url,
                video_duration=creation.video.duration if creation.video else None,
                video_fps=creation.video.fps if creation.video else None,
                bgm=event.bgm,
                provider_response=event.model_dump(),
                completed_at=now,
            )
            enqueue_event(
                db,
                "generation",
                generation.id,
                events.GENERATIONS_COMPLETED,
                {"account_id": generation.account_id, "video_url": creation.url, "cover_url": creation.cover_url},
            )
            db.commit()
        self._observe_terminal(generation, "completed")
        return COMPLETED

    def fail(self, generation_id: str, error_message: str | None, error_code: str) -> LedgerResult:
        """Enter `failed` (if not already) and refund whatever the job still holds."""

        def _mark_failed() -> Generation:
            with self.session_factory() as db:
                generation = self._load(db, generation_id)
                account_id_ctx.set(generation.account_id)
                if generation.status == "failed":
                    return generation
                self._transition(
                    db,
                    generation,
                    "failed",
                    reason=error_code.lower(),
                    error_code=error_code,
                    error_message=error_message,
                    completed_at=utcnow(),
                )
                enqueue_event(
                    db,
                    "generation",
                    generation.id,
                    events.GENERATIONS_FAILED,
                    {"account_id": generation.account_id, "error_code": error_code, "error_message": error_message},
                )
                db.commit()
                self._observe_terminal(generation, "failed")
                return generation

        run_with_retry(_mark_failed)
        result = self.ledger.refund_for_failure(generation_id)
        if result.outcome == ledger_schemas.NOT_FOUND:
            logger.error("generation_refund_failed generation_id=%s outcome=%s", generation_id, result.outcome)
        return result

    def fail_by_task(self, event: GenerationFailed) -> LedgerResult:
        with self.session_factory() as db:
            generation = self._find_by_task(db, event.task_id)
        return self.fail(generation.id, event.error or "provider reported failure", event.error_code)

    def retry(self, generation_id: str) -> Generation:
        """Operator retry: fail (and refund) a running job if needed, then reset it to `pending`."""

        generation = self.get_generation(generation_id)
        if generation.status not in ("processing", "failed"):
            raise InvalidTransition(f"generation {generation_id} cannot be retried from {generation.status}")
        if generation.retry_count >= self.max_retries:
            raise RetryLimitExceeded(
                f"generation {generation_id} reached the retry limit ({generation.retry_count}/{self.max_retries})"
            )

        # Failing runs the refund; on an already failed job it re-attempts it idempotently.
        self.fail(generation_id, "retry requested by operator", "OPERATOR_RETRY")

        with self.session_factory() as db:
            current = self._load(db, generation_id)
            validate_transition(GENERATION_TRANSITIONS, current.status, "pending")
            result = db.execute(
                update(Generation)
                .where(
                    Generation.id == generation_id,
                    Generation.status == "failed",
                    Generation.version == current.version,
                    Generation.retry_count < self.max_retries,
                    Generation.credits_used == 0,
                )
                .values(
                    status="pending",
                    retry_count=Generation.retry_count + 1,
                    provider_task_id=None,
                    error_code=None,
                    error_message=None,
                    provider_creation_id=None,
                    video_url=None,
                    cover_url=None,
                    provider_response=None,
                    processing_started_at=None,
                    completed_at=None,
                    version=Generation.version + 1,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(f"generation {generation_id} changed during retry reset")
            db.commit()
            db.expire_all()
            generation = self._load(db, generation_id)
        logger.info("generation_reset generation_id=%s retry_count=%s", generation_id, generation.retry_count)
        return generation

    def fail_stale(self, now: datetime | None = None, limit: int = 100) -> list[str]:
        """Fail (and refund) jobs stuck in `processing` past the staleness threshold."""

        cutoff = (now or utcnow()) - timedelta(seconds=self.stale_after_seconds)
        with self.session_factory() as db:
            stale_ids = (
                db.execute(
                    select(Generation.id)
                    .where(Generation.status == "processing", Generation.processing_started_at < cutoff)
                    .order_by(Generation.processing_started_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
        failed: list[str] = []
        for generation_id in stale_ids:
            try:
                self.fail(generation_id, "generation timed out waiting for provider", "STALE_TIMEOUT")
                failed.append(generation_id)
            except ConflictError as exc:
                # Completed or failed by a webhook in the meantime.
                logger.info("stale_generation_skipped generation_id=%s reason=%s", generation_id, exc)
        return failed

    def refund_unrefunded_failures(self, limit: int = 100) -> list[str]:
        """Refund failed jobs that still hold credits (crash between failure and refund)."""

        with self.session_factory() as db:
            ids = (
                db.execute(
                    select(Generation.id)
                    .where(Generation.status == "failed", Generation.credits_used > 0)
                    .order_by(Generation.updated_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
        healed: list[str] = []
        for generation_id in ids:
            result = self.ledger.refund_for_failure(generation_id)
            if result.outcome == ledger_schemas.REFUNDED:
                logger.warning("failed_generation_refund_healed generation_id=%s", generation_id)
                healed.append(generation_id)
        return healed
