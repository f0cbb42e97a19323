import shutil
from pathlib import Path

from .errors import ValidationError

ARCHIVE_NAME = "weights.tar"
EXTRACT_DIR_NAME = "extracted"


def _check_job_id(job_id: str) -> str:
    if not job_id or job_id in {".", ".."} or "/" in job_id or "\\" in job_id:
        raise ValidationError(f"invalid job id: {job_id!r}")
    return job_id

def job_dir(base: Path, job_id: str) -> Path:
    d = base / _check_job_id(job_id)
    d.mkdir(parents=True, exist_ok=True)
    return d

def job_archive_path(base: Path, job_id: str) -> Path:
    return job_dir(base, job_id) / ARCHIVE_NAME

def job_extract_dir(base: Path, job_id: str) -> Path:
    return job_dir(base, job_id) / EXTRACT_DIR_NAME

def remove_job_dir(base: Path, job_id: str) -> None:
    shutil.rmtree(base / _check_job_id(job_id), ignore_errors=True)

def uploads_dir(base: Path) -> Path:
    base.mkdir(parents=True, exist_ok=True)
    return base

def upload_path(base: Path, filename: str) -> Path:
    # Only the basename is honoured so references cannot escape the holding area.
    name = Path(filename).name
    if not name or name in {".", ".."}:
        raise ValidationError(f"invalid file name: {filename!r}")
    return uploads_dir(base) / name
