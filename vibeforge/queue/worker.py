"""Event dispatch boundary into the job runner.

One GenerationEvent without a job id maps to exactly one new job: it is
admitted, created in PENDING and run. An event carrying a job id resumes that
job and never creates another.
"""

import structlog

from vibeforge.queue.schemas import GenerationEvent, JobStatus
from vibeforge.services.generation_service import GenerationService

logger = structlog.get_logger(__name__)


async def process_generation_event(event: GenerationEvent, service: GenerationService) -> tuple[str, JobStatus | None]:
    """Handle one dispatch event.

    Admission errors raised while creating the job propagate to the caller;
    once the job exists, the outcome is reported through its status.

    Args:
        event: Dispatch event
        service: Job orchestrator

    Returns:
        Tuple of (job_id, resulting status)
    """
    if event.job_id:
        logger.info("generation_event_resume", job_id=event.job_id, user_id=event.owner_id)
        return event.job_id, await service.run_job(event.job_id)

    submitted = await service.submit_job(event.owner_id, event.prompt, event.model)
    logger.info("generation_event_admitted", job_id=submitted.job_id, user_id=event.owner_id)
    return submitted.job_id, await service.run_job(submitted.job_id)
