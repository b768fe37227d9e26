"""
Staging of bulk uploads into an isolated per-job directory.

Loose images are copied in under a sanitized name; ZIP archives are
extracted entry by entry with path and size checks:
- absolute paths, drive letters, '../' or '..\\' and control characters
  are rejected per entry
- the resolved target must stay inside the staging directory
- exceeding the file-count or decompressed-byte cap aborts the whole upload
"""

import logging
import re
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")

FileSpec = Union[str, Path, Tuple[str, Union[str, Path]]]


class StagingError(ValueError):
    """Upload cannot be staged; nothing from it should be kept."""


@dataclass
class StagedUpload:
    files: List[Path] = field(default_factory=list)
    source: str = ""
    rejected: List[str] = field(default_factory=list)


def sanitize_filename(name: str) -> str:
    """Basename only, restricted to [A-Za-z0-9._-], never hidden or empty."""
    base = re.split(r"[\\/]", name)[-1]
    base = _UNSAFE_NAME_RE.sub("-", base).strip("-")
    base = base.lstrip(".")
    return base or "file"


def extension(name: str) -> str:
    return PurePosixPath(name).suffix.lower().lstrip(".")


def unsafe_entry_reason(name: str) -> Optional[str]:
    """Why a ZIP entry name must not be extracted, or None if it looks safe."""
    if name.startswith("/") or name.startswith("\\") or _DRIVE_RE.match(name):
        return "absolute path"
    if "../" in name or "..\\" in name or name in ("..", ".") or name.endswith("/.."):
        return "directory traversal"
    if _CONTROL_RE.search(name):
        return "control characters"
    return None


def _within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def extract_zip(
    zip_path: Path,
    dest: Path,
    allowed_extensions: Iterable[str],
    max_files: int,
    max_bytes: int,
) -> Tuple[List[Path], List[str]]:
    """
    Extract image entries of zip_path into dest.

    Returns:
        (extracted paths, rejected entry names)

    Raises:
        StagingError: Unreadable archive, or a cap was exceeded
    """
    allowed = {e.lower().lstrip(".") for e in allowed_extensions}
    dest_real = dest.resolve()
    extracted: List[Path] = []
    rejected: List[str] = []
    total_bytes = 0

    try:
        archive = zipfile.ZipFile(zip_path)
    except (zipfile.BadZipFile, OSError) as e:
        raise StagingError(f"Failed to open ZIP file: {e}") from e

    with archive:
        for info in archive.infolist():
            name = info.filename

            reason = unsafe_entry_reason(name)
            if reason:
                logger.warning(f"Rejected ZIP entry ({reason}): {name!r}")
                rejected.append(name)
                continue

            if info.is_dir() or name.endswith("\\"):
                continue

            target = (dest / name).resolve()
            if not _within(target, dest_real):
                logger.warning(f"Rejected ZIP entry (outside staging): {name!r}")
                rejected.append(name)
                continue

            if extension(name) not in allowed:
                continue

            if len(extracted) + 1 > max_files:
                raise StagingError(f"ZIP contains too many files (max {max_files}).")

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target = _unique_path(target)
            except OSError as e:
                # a parent path component is already a regular file
                logger.warning(f"Rejected ZIP entry (unwritable target): {name!r}: {e}")
                rejected.append(name)
                continue

            try:
                with archive.open(info) as src, open(target, "wb") as out:
                    for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                        total_bytes += len(chunk)
                        if total_bytes > max_bytes:
                            raise StagingError(
                                f"ZIP decompressed size exceeds {max_bytes / (1024 ** 3):.1f}GB limit."
                            )
                        out.write(chunk)
            except (zipfile.BadZipFile, OSError, RuntimeError) as e:
                # RuntimeError: encrypted entry
                logger.warning(f"Failed to read ZIP entry {name!r}: {e}")
                rejected.append(name)
                target.unlink(missing_ok=True)
                continue

            extracted.append(target)

    return extracted, rejected


def stage_files(
    files: Sequence[FileSpec],
    staging_path: Path,
    allowed_extensions: Iterable[str],
    max_files: int,
    max_bytes: int,
) -> StagedUpload:
    """
    Copy/extract uploads into staging_path.

    Each entry of files is a path, or a (display name, path) pair when the
    on-disk name is a temporary one.
    """
    allowed = [e.lower().lstrip(".") for e in allowed_extensions]
    staging_path.mkdir(parents=True, exist_ok=True)
    result = StagedUpload()
    zip_source: Optional[str] = None
    names: List[str] = []

    for spec in files:
        display, path = spec if isinstance(spec, tuple) else (Path(spec).name, spec)
        path = Path(path)
        if not path.is_file():
            raise StagingError(f"File not found: {display}")

        name = sanitize_filename(display)
        names.append(name)

        if extension(name) == "zip":
            used_bytes = sum(p.stat().st_size for p in result.files)
            extracted, rejected = extract_zip(
                path, staging_path, allowed,
                max_files=max_files - len(result.files),
                max_bytes=max_bytes - used_bytes,
            )
            result.files.extend(extracted)
            result.rejected.extend(rejected)
            zip_source = f"zip:{name}"
            continue

        if extension(name) not in allowed:
            logger.info(f"Ignoring non-image upload: {name}")
            continue

        if len(result.files) + 1 > max_files:
            raise StagingError(f"Too many files (max {max_files}).")

        dest = _unique_path(staging_path / name)
        shutil.copyfile(path, dest)
        result.files.append(dest)

    if zip_source:
        result.source = zip_source
    elif len(names) == 1:
        result.source = f"file:{names[0]}"
    else:
        result.source = f"files:{len(names)}"
    return result


def relative_posix(path: Path, root: Path) -> str:
    return path.resolve().relative_to(root.resolve()).as_posix()


def _unique_path(path: Path) -> Path:
    if not path.exists():
        return path
    stem, suffix = path.stem, path.suffix
    n = 1
    while True:
        candidate = path.with_name(f"{stem}-{n}{suffix}")
        if not candidate.exists():
            return candidate
        n += 1
