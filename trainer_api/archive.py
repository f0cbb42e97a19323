import logging
import os
import shutil
import tarfile
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Literal

from .errors import AmbiguousArtifactError, ArtifactNotFoundError, ExtractionError, ValidationError
from .models import UploadedImage
from .storage import upload_path

logger = logging.getLogger(__name__)

WEIGHTS_SUFFIX = ".safetensors"
MAX_SEARCH_DEPTH = 32

LocateStatus = Literal["found", "not_found", "ambiguous"]


@dataclass(frozen=True)
class LocateResult:
    status: LocateStatus
    matches: List[Path] = field(default_factory=list)

    @property
    def path(self) -> Path:
        return self.matches[0]


def extract(archive_path: Path, dest_dir: Path) -> Path:
    """Expand a (possibly compressed) tar archive into ``dest_dir``.

    Any previous expansion is removed first. Entries are checked with the
    ``data`` filter, which rejects absolute names, paths escaping
    ``dest_dir``, links pointing outside it and special files.
    """
    if dest_dir.exists():
        shutil.rmtree(dest_dir)
    dest_dir.mkdir(parents=True)

    try:
        with tarfile.open(archive_path, mode="r:*") as tar:
            tar.extractall(dest_dir, filter="data")
    except (tarfile.TarError, EOFError, OSError) as exc:
        raise ExtractionError(f"could not extract {archive_path.name}: {exc}") from exc
    return dest_dir


def locate(root: Path, suffix: str = WEIGHTS_SUFFIX, max_depth: int = MAX_SEARCH_DEPTH) -> LocateResult:
    """Depth-first search for files ending with ``suffix``.

    Siblings are visited in lexicographic order and directories deeper than
    ``max_depth`` below ``root`` are not entered. Symlinks are not followed.
    """
    matches: List[Path] = []
    stack = [(root, 0)]
    while stack:
        current, depth = stack.pop()
        try:
            entries = sorted(os.scandir(current), key=lambda e: e.name)
        except OSError as exc:
            raise ExtractionError(f"could not list {current}: {exc}") from exc

        subdirs = []
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if depth < max_depth:
                    subdirs.append((Path(entry.path), depth + 1))
            elif entry.is_file(follow_symlinks=False) and entry.name.endswith(suffix):
                matches.append(Path(entry.path))
        # Reversed so the lexicographically first directory is popped next.
        stack.extend(reversed(subdirs))

    if not matches:
        return LocateResult("not_found")
    if len(matches) > 1:
        return LocateResult("ambiguous", matches)
    return LocateResult("found", matches)


def require_single(result: LocateResult, suffix: str = WEIGHTS_SUFFIX) -> Path:
    if result.status == "not_found":
        raise ArtifactNotFoundError(f"no {suffix} file found in archive")
    if result.status == "ambiguous":
        names = ", ".join(str(p) for p in result.matches)
        raise AmbiguousArtifactError(f"expected one {suffix} file, found {len(result.matches)}: {names}")
    return result.path


def bundle_images(images: Iterable[UploadedImage], uploads: Path) -> Path:
    """Zip previously uploaded images into ``training_<ms>.zip`` in ``uploads``."""
    zip_path = upload_path(uploads, f"training_{int(time.time() * 1000)}.zip")
    added = 0
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for image in images:
            src = upload_path(uploads, image.filename)
            if not src.is_file():
                logger.warning("Image %s not found in %s, skipping", image.filename, uploads)
                continue
            zf.write(src, arcname=src.name)
            added += 1

    if added == 0:
        zip_path.unlink(missing_ok=True)
        raise ValidationError("none of the referenced images exist")
    logger.info("Created bundle %s with %d images", zip_path.name, added)
    return zip_path
