"""GenerationService: admits generation requests and drives each job to a terminal state.

Wires the CreditLedger (admission), the JobStore (state machine), the
CodeGenerator (prompt -> code) and the SandboxPool (deploy + preview URL).

Step sequence for one job:
    generate code -> acquire sandbox -> deploy -> resolve preview URL -> COMPLETED

Cancellation is cooperative: the job checks for a cancel request after every
external call and hands off to CancellationService instead of continuing.
Nothing raised by a step escapes ``run_job``; every failure is classified and
written once into the job's ``error_detail``.
"""

import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from uuid import uuid4

import structlog

from vibeforge.agent.generator import CodeGenerator, build_code_generator
from vibeforge.agent.llm_helpers import generate_code_with_retry
from vibeforge.agent.models import ModelSelector, get_available_models
from vibeforge.core.config import Settings, get_settings
from vibeforge.core.exceptions import (
    GenerationError,
    InsufficientCreditsError,
    InvalidRequestError,
    JobAccessDeniedError,
    JobNotFoundError,
    LedgerError,
    PersistenceError,
    SandboxError,
    SandboxExecutionError,
    SandboxProvisionError,
    SandboxTeardownError,
    TransientGenerationError,
)
from vibeforge.credits.ledger import CreditLedger
from vibeforge.credits.schemas import CreditAction
from vibeforge.queue.archive import persist_job_record
from vibeforge.queue.job_store import JobStore
from vibeforge.queue.schemas import (
    JobRecord,
    JobStatus,
    JobStatusView,
    MetadataPatch,
    MetadataWriter,
    PreviewResult,
    SubmitJobResult,
    job_status_view,
)
from vibeforge.sandbox.pool import SandboxHandle, SandboxPool
from vibeforge.services.cancellation_service import CancellationService

logger = structlog.get_logger(__name__)

GenerateFn = Callable[..., Awaitable[str]]


class GenerationService:
    """Job Orchestrator.

    Constructor uses dependency injection so tests can supply fakes for the
    code generator and the sandbox provider without touching any real APIs.

    Args:
        job_store: Job records and transitions
        ledger: Credit admission control
        sandbox_pool: Process-wide sandbox pool
        cancellation: Shared cancellation flow
        generator_factory: Builds a CodeGenerator for a model selector
        generate: Calls a CodeGenerator with bounded transient retry
        settings: Application settings (template id, prompt rules, timeouts)
    """

    def __init__(
        self,
        job_store: JobStore,
        ledger: CreditLedger,
        sandbox_pool: SandboxPool,
        cancellation: CancellationService,
        generator_factory: Callable[[ModelSelector], CodeGenerator] = build_code_generator,
        generate: GenerateFn = generate_code_with_retry,
        settings: Settings | None = None,
    ) -> None:
        self.job_store = job_store
        self.ledger = ledger
        self.sandbox_pool = sandbox_pool
        self.cancellation = cancellation
        self.generator_factory = generator_factory
        self.generate = generate
        self.settings = settings or get_settings()

    @property
    def template_id(self) -> str:
        return self.settings.e2b_template_id

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _validate_model(self, model: str | None) -> ModelSelector:
        try:
            selector = ModelSelector(model or self.settings.default_model)
        except ValueError:
            raise InvalidRequestError(f"Unknown model: {model}") from None

        available = {m.selector for m in get_available_models(self.settings)}
        if selector not in available:
            raise InvalidRequestError(f"Model {selector.value} is not available")
        return selector

    async def submit_job(
        self,
        owner_id: str,
        prompt: str,
        model: str | None = None,
        now: datetime | None = None,
    ) -> SubmitJobResult:
        """Admit a generation request and create its job in PENDING.

        Credits are debited before the job record exists; no job is created
        when admission fails.

        Args:
            owner_id: Submitting user
            prompt: Natural-language description of the app
            model: Model selector (defaults to the configured default model)
            now: Current time (for deterministic testing)

        Returns:
            SubmitJobResult with the new job id and the remaining balance

        Raises:
            InvalidRequestError: Prompt too short or unknown/unavailable model
            InsufficientCreditsError: Balance cannot cover a generation
            LedgerError: Ledger unavailable (never reported as insufficient credits)
            PersistenceError: Job could not be created after the debit
        """
        prompt = (prompt or "").strip()
        min_length = self.settings.min_prompt_length
        if len(prompt) < min_length:
            raise InvalidRequestError(f"Prompt must be at least {min_length} characters")
        selector = self._validate_model(model)

        credit = await self.ledger.check_and_consume(owner_id, CreditAction.APP_GENERATION, consume=True, now=now)
        if not credit.ok:
            raise InsufficientCreditsError(credit.reason or "Insufficient credits", credit.remaining)

        try:
            job = await self.job_store.create_job(owner_id, prompt, selector.value, now=now)
        except PersistenceError:
            await self._record_failed_usage(owner_id, "Job could not be created")
            raise

        logger.info(
            "job_submitted",
            job_id=job.id,
            user_id=owner_id,
            model=selector.value,
            credits_remaining=credit.remaining,
        )
        return SubmitJobResult(job_id=job.id, credits_remaining=credit.remaining)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_job(self, job_id: str) -> JobStatus | None:
        """Drive one job from PENDING to a terminal status.

        A job already in a terminal status is left untouched. Never raises.

        Returns:
            The job's resulting status, or None if it could not be loaded
        """
        log = logger.bind(job_id=job_id)

        try:
            job = await self.job_store.get_job(job_id)
        except PersistenceError as exc:
            log.error("job_load_failed", error=str(exc), error_type=type(exc).__name__)
            return None

        if job is None:
            log.warning("job_not_found")
            return None
        if job.is_terminal:
            log.info("job_already_terminal", status=job.status.value)
            return job.status

        handle: SandboxHandle | None = None
        try:
            if job.status == JobStatus.CANCELLING:
                return await self._finish_cancelled(job_id, job.sandbox_key, job.metadata.get("sandboxId"))

            started = time.monotonic()
            if job.status == JobStatus.PENDING:
                moved = await self.job_store.transition(
                    job_id,
                    JobStatus.RUNNING,
                    metadata=MetadataPatch(started_at=datetime.now(UTC).isoformat()),
                )
                if not moved:
                    return await self._after_lost_race(job_id)

            # 1. Generate code
            generator = self.generator_factory(ModelSelector(job.model))
            artifact = await self.generate(
                generator,
                job.prompt,
                timeout=self.settings.generation_timeout_seconds,
            )
            log.info("job_code_generated", artifact_chars=len(artifact))
            if await self._cancel_requested(job_id):
                return await self._finish_cancelled(job_id)

            # 2. Acquire sandbox
            handle = await self.sandbox_pool.acquire(self.template_id)
            await self.job_store.attach_sandbox(job_id, handle.key, handle.instance_id)
            if await self._cancel_requested(job_id):
                borrowed, handle = handle, None
                return await self._cancel_borrowed(job_id, borrowed)

            # 3. Deploy (exclusive on the handle for the duration of the step)
            await self.sandbox_pool.deploy(handle, artifact)
            if await self._cancel_requested(job_id):
                borrowed, handle = handle, None
                return await self._cancel_borrowed(job_id, borrowed)

            # 4. Resolve preview URL
            preview_url = self.sandbox_pool.resolve_url(handle.key, handle.instance_id)
            if preview_url is None:
                raise SandboxExecutionError("Sandbox has no instance id to derive a preview URL from")

            # 5. Persist success
            completed = await self.job_store.transition(
                job_id,
                JobStatus.COMPLETED,
                artifact=artifact,
                metadata=MetadataPatch(
                    preview_url=preview_url,
                    execution_time_ms=int((time.monotonic() - started) * 1000),
                    completed_at=datetime.now(UTC).isoformat(),
                ),
            )
            self.sandbox_pool.release(handle)
            handle = None
            if not completed:
                return await self._after_lost_race(job_id)

            log.info("job_completed", preview_url=preview_url)
            await self._archive(job_id)
            return JobStatus.COMPLETED
        except Exception as exc:
            return await self._fail(job, exc, handle)

    async def _cancel_requested(self, job_id: str) -> bool:
        status = await self.job_store.get_status(job_id)
        return status in (JobStatus.CANCELLING, JobStatus.CANCELLED)

    async def _cancel_borrowed(self, job_id: str, handle: SandboxHandle) -> JobStatus:
        """Give back the borrowed handle, then cancel with that exact instance as the teardown target."""
        self.sandbox_pool.release(handle)
        return await self._finish_cancelled(job_id, handle.key, handle.instance_id)

    async def _finish_cancelled(
        self,
        job_id: str,
        sandbox_key: str | None = None,
        instance_id: str | None = None,
    ) -> JobStatus:
        logger.info("job_cancel_observed", job_id=job_id, sandbox_key=sandbox_key, instance_id=instance_id)
        await self.cancellation.complete_cancellation(job_id, sandbox_key, instance_id=instance_id)
        return JobStatus.CANCELLED

    async def _after_lost_race(self, job_id: str) -> JobStatus | None:
        """A transition was refused: the job moved underneath us (cancel)."""
        status = await self.job_store.get_status(job_id)
        if status in (JobStatus.CANCELLING, JobStatus.CANCELLED):
            return await self._finish_cancelled(job_id)
        return status

    async def _fail(self, job: JobRecord, exc: Exception, handle: SandboxHandle | None) -> JobStatus | None:
        """Classify ``exc``, clean up the handle and move the job to FAILED. Never raises."""
        log = logger.bind(job_id=job.id, user_id=job.owner_id)
        debug_id = str(uuid4())
        error_kind = _error_kind(exc)
        log.error(
            "job_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            error_kind=error_kind,
            debug_id=debug_id,
            exc_info=error_kind == "internal",
        )

        try:
            # A cancel that tore the sandbox down mid-step surfaces here as a step error
            if await self._cancel_requested(job.id):
                if handle is not None:
                    return await self._cancel_borrowed(job.id, handle)
                return await self._finish_cancelled(job.id)

            if handle is not None:
                if isinstance(exc, SandboxError):
                    try:
                        await self.sandbox_pool.destroy(handle.key, handle.instance_id)
                    except SandboxTeardownError:
                        pass  # logged by the pool; the handle is already gone
                else:
                    self.sandbox_pool.release(handle)

            error_detail = f"{_friendly_message(exc)} (debug id: {debug_id})"
            moved = await self.job_store.transition(
                job.id,
                JobStatus.FAILED,
                error_detail=error_detail,
                metadata=MetadataPatch(
                    failed_at=datetime.now(UTC).isoformat(),
                    debug_id=debug_id,
                    error_kind=error_kind,
                ),
            )
            if not moved:
                return await self._after_lost_race(job.id)
        except Exception as inner:
            log.error(
                "job_fail_transition_failed",
                error=str(inner),
                error_type=type(inner).__name__,
                debug_id=debug_id,
            )
            return None

        await self._record_failed_usage(job.owner_id, error_detail)
        await self._archive(job.id)
        return JobStatus.FAILED

    async def _record_failed_usage(self, owner_id: str, error: str) -> None:
        """Non-fatal: a ledger outage must not mask the original failure."""
        try:
            await self.ledger.record_failed_usage(owner_id, CreditAction.APP_GENERATION, error)
        except LedgerError as exc:
            logger.warning("failed_usage_not_recorded", user_id=owner_id, error=str(exc))

    async def _archive(self, job_id: str) -> None:
        try:
            job = await self.job_store.get_job(job_id)
        except PersistenceError as exc:
            logger.warning("job_archive_skipped", job_id=job_id, error=str(exc))
            return
        if job is not None:
            await persist_job_record(job)

    # ------------------------------------------------------------------
    # Queries and follow-up actions
    # ------------------------------------------------------------------

    async def _owned_job(self, job_id: str, owner_id: str) -> JobRecord:
        job = await self.job_store.get_job(job_id)
        if job is None or job.owner_id != owner_id:
            raise JobNotFoundError(job_id)
        return job

    async def get_job_status(self, job_id: str, owner_id: str) -> JobStatusView:
        """Owner-scoped job status. Another user's job is reported as not found."""
        return job_status_view(await self._owned_job(job_id, owner_id))

    async def list_jobs(self, owner_id: str, limit: int = 20, offset: int = 0) -> list[JobStatusView]:
        return [job_status_view(job) for job in await self.job_store.list_jobs(owner_id, limit, offset)]

    async def get_stats(self, owner_id: str) -> dict:
        counts = await self.job_store.count_by_status(owner_id)
        return {"total": sum(counts.values()), "by_status": counts}

    async def preview_job(self, job_id: str, owner_id: str, now: datetime | None = None) -> PreviewResult:
        """Re-deploy a completed job's artifact into a pooled sandbox.

        Gated by a dry-run preview credit check; the preview is debited only
        after the sandbox is serving.

        Raises:
            JobNotFoundError: Unknown job
            JobAccessDeniedError: Job owned by another user
            InvalidRequestError: Job is not COMPLETED
            InsufficientCreditsError: Balance cannot cover a preview
            SandboxError: Sandbox could not be provisioned or deployed to
        """
        job = await self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.owner_id != owner_id:
            raise JobAccessDeniedError(job_id)
        if job.status != JobStatus.COMPLETED or not job.artifact:
            raise InvalidRequestError("Only completed jobs can be previewed")

        check = await self.ledger.check_and_consume(owner_id, CreditAction.SANDBOX_PREVIEW, consume=False, now=now)
        if not check.ok:
            raise InsufficientCreditsError(check.reason or "Insufficient credits", check.remaining)

        handle = await self.sandbox_pool.acquire(self.template_id)
        try:
            await self.sandbox_pool.deploy(handle, job.artifact)
            preview_url = self.sandbox_pool.resolve_url(handle.key, handle.instance_id)
            if preview_url is None:
                raise SandboxExecutionError("Sandbox has no instance id to derive a preview URL from")
        except SandboxError:
            try:
                await self.sandbox_pool.destroy(handle.key, handle.instance_id)
            except SandboxTeardownError:
                pass  # logged by the pool
            raise
        self.sandbox_pool.release(handle)

        await self.job_store.attach_sandbox(job_id, handle.key, handle.instance_id, now=now)
        await self.job_store.merge_metadata(
            job_id,
            MetadataPatch(preview_url=preview_url, previewed_at=(now or datetime.now(UTC)).isoformat()),
            MetadataWriter.ORCHESTRATOR,
            now=now,
        )

        debit = await self.ledger.check_and_consume(owner_id, CreditAction.SANDBOX_PREVIEW, consume=True, now=now)
        if not debit.ok:
            logger.warning("preview_debit_rejected", job_id=job_id, user_id=owner_id, remaining=debit.remaining)

        await self._archive(job_id)
        logger.info("job_previewed", job_id=job_id, user_id=owner_id, preview_url=preview_url)
        return PreviewResult(job_id=job_id, preview_url=preview_url, credits_remaining=debit.remaining)


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, GenerationError):
        return "generation"
    if isinstance(exc, SandboxProvisionError):
        return "sandbox_provision"
    if isinstance(exc, SandboxError):
        return "sandbox_execution"
    if isinstance(exc, PersistenceError):
        return "persistence"
    return "internal"


def _friendly_message(exc: Exception) -> str:
    """Convert a classified exception into a user-facing failure message."""
    if isinstance(exc, TransientGenerationError):
        return "The code generator is busy or timed out. Please try again in a few minutes."
    if isinstance(exc, GenerationError):
        return "The code generator could not produce an app for this prompt. Try rephrasing it."
    if isinstance(exc, SandboxProvisionError):
        return "The preview sandbox could not be started. Please try again."
    if isinstance(exc, SandboxError):
        return "The generated app failed to start in the preview sandbox."
    if isinstance(exc, PersistenceError):
        return "The job state could not be saved. Please try again."
    return "An unexpected error occurred during generation. Our team has been notified."
