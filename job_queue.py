"""
Async generation jobs.

Jobs are admitted with the same checks as a synchronous request, stored as
pending, then processed in the background. Clients poll for results in batches.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from db_store import PendingJobStore
from errors import GatewayError, ValidationError
from generation_service import GenerationService
from identity import Identity
from models import GenerationRequest

logger = logging.getLogger(__name__)


MAX_STATUS_BATCH = 50
# Processing jobs older than this are reported as timed out
STALE_JOB_SECONDS = 15 * 60


def _elapsed_ms(since: Optional[str], until: Optional[str] = None) -> int:
    if not since:
        return 0
    try:
        start = datetime.fromisoformat(since)
        end = datetime.fromisoformat(until) if until else datetime.utcnow()
    except ValueError:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


class JobQueue:
    def __init__(self, jobs: PendingJobStore, generation: GenerationService):
        self.jobs = jobs
        self.generation = generation

    def enqueue(self, identity: Identity, request: GenerationRequest) -> Dict[str, Any]:
        """Admit and store a job. Raises the same errors as a synchronous request."""
        ctx = self.generation.prepare(identity, request)
        request = ctx.request
        request_id = request.request_id
        job_id = self.jobs.insert(
            identity.user_id,
            request_id,
            request.to_payload(),
            model=ctx.selection.model if ctx.selection else request.model,
            image_size=request.image_size,
        )
        logger.info(f"Enqueued job {job_id} for user {identity.user_id}")
        return {
            "jobId": job_id,
            "requestId": request_id,
            "status": "pending",
            "tokens_remaining": ctx.balance_before,
        }

    async def process(self, job_id: str, identity: Identity) -> None:
        """Background worker for one job. Never raises."""
        if not self.jobs.claim(job_id):
            logger.info(f"Job {job_id} already claimed, skipping")
            return

        job = self.jobs.get(job_id)
        try:
            request = GenerationRequest.from_payload(job["request_payload"])
            response = await self.generation.generate(identity, request)
        except GatewayError as e:
            logger.error(f"Job {job_id} failed: {e.error_code} {e.message}")
            self.jobs.fail(job_id, e.message, e.error_code)
            return
        except Exception:
            logger.exception(f"Job {job_id} crashed")
            self.jobs.fail(job_id, "Internal server error", "500")
            return

        self.jobs.complete(job_id, response)
        logger.info(f"Job {job_id} completed with {len(response['images'])} image(s)")

    def _view(self, job: Dict[str, Any]) -> Dict[str, Any]:
        status = job["status"]
        if status == "processing" and _elapsed_ms(job.get("started_at")) > STALE_JOB_SECONDS * 1000:
            self.jobs.fail(job["id"], "Request timed out", "504", status="timeout")
            job = self.jobs.get(job["id"])
            status = job["status"]

        view = {
            "status": status,
            "elapsed": _elapsed_ms(job.get("created_at"), job.get("completed_at")),
            "retryCount": job.get("retry_count") or 0,
        }
        if status == "completed":
            result = job.get("result") or {}
            view["images"] = result.get("images", [])
            view["content"] = result.get("content", "")
            view["usage"] = result.get("usage")
            if result.get("warning"):
                view["warning"] = result["warning"]
        elif status in ("failed", "timeout"):
            view["error"] = job.get("error_message")
            view["errorCode"] = job.get("error_code")
        return view

    def status(self, user_id: str, job_ids: Iterable[str]) -> Dict[str, Any]:
        """Status for up to MAX_STATUS_BATCH jobs owned by user_id."""
        if not isinstance(job_ids, list) or not job_ids:
            raise ValidationError("jobIds must be a non-empty array")
        job_ids = [str(job_id) for job_id in job_ids[:MAX_STATUS_BATCH]]

        found = self.jobs.get_many(user_id, job_ids)
        jobs = {}
        for job_id in job_ids:
            job = found.get(job_id)
            jobs[job_id] = self._view(job) if job else {"status": "not_found"}
        return {"jobs": jobs}
