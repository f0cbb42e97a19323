import asyncio
import logging
from typing import Any, Dict, Optional

from .errors import PipelineError
from .idempotency import JobLocks
from .models import BlobUploadResult, TrainingJob
from .pipeline import WeightsPipeline
from .replicate_client import ReplicateClient

logger = logging.getLogger(__name__)


def _snapshot(training: TrainingJob, processed: Optional[BlobUploadResult] = None) -> Dict[str, Any]:
    data = training.model_dump(mode="json")
    if processed is not None:
        data["processedWeights"] = True
        data["modelUrl"] = processed.url
    return data


class StatusPoller:
    """Answers status polls and runs the weights pipeline once per finished job.

    The processed marker comes from ``store``; the pipeline itself runs under a
    per-job lock and the marker is read again once the lock is held, so
    concurrent polls for the same job do not both process it.
    """

    def __init__(self, jobs: ReplicateClient, pipeline: WeightsPipeline, store, locks: Optional[JobLocks] = None):
        self.jobs = jobs
        self.pipeline = pipeline
        self.store = store
        self.locks = locks or JobLocks()

    async def check_status(self, job_id: str) -> Dict[str, Any]:
        training = await self.jobs.get_status(job_id)
        if training.status != "succeeded" or not training.weights_url:
            return _snapshot(training)

        processed = await self.store.get(job_id)
        if processed is not None:
            return _snapshot(training, processed)

        async with self.locks.hold(job_id):
            processed = await self.store.get(job_id)
            if processed is not None:
                return _snapshot(training, processed)

            logger.info("Processing weights for job %s", job_id)
            try:
                result = await self.pipeline.process_weights(training.weights_url, job_id)
            except PipelineError as exc:
                logger.exception("Failed processing weights for job %s", job_id)
                data = _snapshot(training)
                data["extractError"] = str(exc.cause)
                data["extractStage"] = exc.stage
                return data

            await self.store.mark_processed(job_id, result)
            await asyncio.to_thread(self.pipeline.cleanup, job_id)

        return _snapshot(training, result)

    async def reset(self, job_id: str) -> bool:
        async with self.locks.hold(job_id):
            removed = await self.store.reset(job_id)
        if removed:
            logger.info("Cleared processed marker for job %s", job_id)
        return removed
