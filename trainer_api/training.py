import asyncio
import logging
from pathlib import Path
from typing import Any, Dict

from .archive import bundle_images
from .blobstore import S3BlobStore
from .errors import ValidationError
from .models import StartTrainingRequest
from .replicate_client import ReplicateClient

logger = logging.getLogger(__name__)

BUNDLE_PREFIX = "training-data"


class TrainingLauncher:
    def __init__(
        self,
        jobs: ReplicateClient,
        bundles: S3BlobStore,
        uploads: Path,
        trainer_model: str,
        destination: str,
        min_images: int = 5,
    ):
        self.jobs = jobs
        self.bundles = bundles
        self.uploads = uploads
        self.trainer_model = trainer_model
        self.destination = destination
        self.min_images = min_images

    async def start_training(self, request: StartTrainingRequest) -> Dict[str, Any]:
        count = len(request.image_files)
        if count < self.min_images:
            raise ValidationError(f"at least {self.min_images} images are required, got {count}")

        zip_path = await asyncio.to_thread(bundle_images, request.image_files, self.uploads)
        try:
            with zip_path.open("rb") as fh:
                bundle = await self.bundles.put(fh, f"{BUNDLE_PREFIX}/{zip_path.name}", "application/zip")
        finally:
            # The upload has returned, nothing reads the bundle any more.
            zip_path.unlink(missing_ok=True)
            logger.info("Removed local bundle %s", zip_path.name)

        training = await self.jobs.submit(
            self.trainer_model,
            request.trainer_input(bundle.url),
            destination=self.destination,
        )
        return training.model_dump(mode="json")
