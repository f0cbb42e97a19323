import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

MIB = 1024 * 1024


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes"}


def _optional(name: str) -> Optional[str]:
    value = os.environ.get(name, "").strip()
    return value or None


class Settings:
    replicate_api_token: str
    replicate_api_base: str
    trainer_model: str
    training_destination: str
    generation_model: str

    s3_bucket: str
    bundle_bucket: str
    s3_region: Optional[str]
    s3_endpoint: Optional[str]
    s3_access_key_id: Optional[str]
    s3_secret_access_key: Optional[str]
    s3_force_path_style: bool
    public_base_url: Optional[str]

    redis_url: Optional[str]
    work_dir: Path
    uploads_dir: Path
    min_training_images: int
    upload_part_size: int
    upload_queue_size: int
    fetch_timeout_sec: float
    upload_timeout_sec: float
    http_timeout_sec: float
    cors_origins: List[str]
    log_level: str

    def __init__(self) -> None:
        self.replicate_api_token = os.environ.get("REPLICATE_API_TOKEN", "")
        self.replicate_api_base = os.environ.get(
            "REPLICATE_API_BASE", "https://api.replicate.com/v1"
        ).rstrip("/")
        self.trainer_model = os.environ.get(
            "TRAINER_MODEL",
            "ostris/flux-dev-lora-trainer:"
            "e440909d3512c31646ee2e0c7d6f6f4923224863a6a10c494606e79fb5844497",
        )
        self.training_destination = os.environ.get("TRAINING_DESTINATION", "portugalgateway/teste")
        self.generation_model = os.environ.get(
            "GENERATION_MODEL",
            "fofr/flux-tesla-robovan:"
            "75f4226a56e37b3d81a257ee2f9c18166b146e9d0018babd4f0a10b1e6e89be8",
        )

        self.s3_bucket = os.environ.get("S3_BUCKET", "")
        self.bundle_bucket = os.environ.get("BUNDLE_BUCKET", "") or self.s3_bucket
        self.s3_region = _optional("S3_REGION")
        self.s3_endpoint = _optional("S3_ENDPOINT")
        self.s3_access_key_id = _optional("S3_ACCESS_KEY_ID")
        self.s3_secret_access_key = _optional("S3_SECRET_ACCESS_KEY")
        self.s3_force_path_style = _flag("S3_FORCE_PATH_STYLE")
        self.public_base_url = _optional("PUBLIC_BASE_URL")

        self.redis_url = _optional("REDIS_URL")
        self.work_dir = Path(os.environ.get("WORK_DIR", "/tmp/trainer-api/work")).resolve()
        self.uploads_dir = Path(os.environ.get("UPLOADS_DIR", "/tmp/trainer-api/uploads")).resolve()
        self.min_training_images = int(os.environ.get("MIN_TRAINING_IMAGES", "5"))
        self.upload_part_size = int(os.environ.get("UPLOAD_PART_SIZE", str(5 * MIB)))
        self.upload_queue_size = int(os.environ.get("UPLOAD_QUEUE_SIZE", "4"))
        self.fetch_timeout_sec = float(os.environ.get("FETCH_TIMEOUT_SEC", "900"))
        self.upload_timeout_sec = float(os.environ.get("UPLOAD_TIMEOUT_SEC", "900"))
        self.http_timeout_sec = float(os.environ.get("HTTP_TIMEOUT_SEC", "60"))
        self.cors_origins = [
            origin.strip() for origin in os.environ.get("CORS_ORIGINS", "*").split(",") if origin.strip()
        ]
        self.log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    def require(self) -> None:
        missing = []
        if not self.replicate_api_token:
            missing.append("REPLICATE_API_TOKEN")
        if not self.s3_bucket:
            missing.append("S3_BUCKET")
        if missing:
            raise RuntimeError(f"Missing required env vars: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    return Settings()
