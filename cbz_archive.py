import os
import shutil
import tempfile
import zipfile
from enum import Enum
from pathlib import Path, PurePosixPath

from rich.markup import escape

from cbz_log import ExtractionFailure, MissingFile, RepackFailure, UnrecognizedContainer, log

ZIP_MAGIC = b"PK\x03\x04"
RAR4_MAGIC = b"Rar!\x1a\x07\x00"
RAR5_MAGIC = b"Rar!\x1a\x07\x01\x00"

# Fixed entry metadata so repacking the same content gives the same bytes
REPACK_DATE_TIME = (1980, 1, 1, 0, 0, 0)
REPACK_FILE_MODE = 0o644
REPACK_SUFFIX = ".cbz.tmp"


class ArchiveType(Enum):
    MISSING = "missing"
    UNKNOWN = "unknown"
    ZIP = "zip"
    RAR = "rar"


def classify_archive(path):
    """Identify the real container type of ``path`` from its first 8 bytes.

    Absence is reported as ``ArchiveType.MISSING``; any other I/O problem
    (permissions, a directory in place of a file) is raised to the caller.
    """
    path = Path(path)
    if not path.exists():
        return ArchiveType.MISSING
    with open(path, 'rb') as f:
        head = f.read(8)
    if len(head) < 4:
        return ArchiveType.UNKNOWN
    if head[:4] == ZIP_MAGIC:
        return ArchiveType.ZIP
    if head[:7] == RAR4_MAGIC or head[:8] == RAR5_MAGIC:
        return ArchiveType.RAR
    return ArchiveType.UNKNOWN


def _safe_entry_path(name):
    """Return the entry's relative path, or None when it must not be written."""
    name = name.replace("\\", "/")
    if not name.strip() or name.endswith("/"):
        return None
    rel = PurePosixPath(name)
    if rel.is_absolute() or ".." in rel.parts or (rel.parts and ":" in rel.parts[0]):
        log(f"[yellow]   ⚠️ Skipping potentially unsafe entry path: {escape(name)}", level="warning")
        return None
    return rel


def extract_zip(source, staging):
    count = 0
    try:
        with zipfile.ZipFile(source, 'r') as zip_ref:
            for info in zip_ref.infolist():
                if info.is_dir():
                    continue
                rel = _safe_entry_path(info.filename)
                if rel is None:
                    continue
                target = Path(staging).joinpath(*rel.parts)
                target.parent.mkdir(parents=True, exist_ok=True)
                with zip_ref.open(info) as src, open(target, 'wb') as dst:
                    while True:
                        chunk = src.read(1024 * 1024)
                        if not chunk:
                            break
                        dst.write(chunk)
                count += 1
    # RuntimeError: encrypted entries; NotImplementedError: unsupported compression method
    except (zipfile.BadZipFile, zipfile.LargeZipFile, NotImplementedError, RuntimeError, EOFError, OSError) as e:
        raise ExtractionFailure(f"Failed to extract {Path(source).name}: {e}") from e
    return count


def extract_archive(archive_type, source, staging, decompressor=None):
    """Expand ``source`` into the empty ``staging`` directory.

    ZIP archives are read directly; RAR archives need a decompressor
    capability. Partially written staging directories are the caller's to
    remove.
    """
    if archive_type == ArchiveType.MISSING:
        raise MissingFile(f"File not found: {source}")
    if archive_type == ArchiveType.UNKNOWN:
        raise UnrecognizedContainer(f"Neither a ZIP nor a RAR signature: {Path(source).name}")

    if archive_type == ArchiveType.ZIP:
        return extract_zip(source, staging)

    if decompressor is None:
        raise ExtractionFailure(f"{Path(source).name} is RAR-compressed and no RAR decompressor is available")
    try:
        decompressor.decompress(source, staging)
    except ExtractionFailure:
        raise
    except OSError as e:
        raise ExtractionFailure(f"Failed to decompress {Path(source).name}: {e}") from e
    return sum(1 for p in Path(staging).rglob("*") if p.is_file())


def repack_archive(staging, dest_dir):
    """Store every file under ``staging`` into a new uncompressed ZIP in ``dest_dir``.

    Returns the path of the new temporary archive; the original archive is
    never written here.
    """
    staging = Path(staging)
    try:
        fd, tmp_name = tempfile.mkstemp(suffix=REPACK_SUFFIX, dir=dest_dir)
    except OSError as e:
        raise RepackFailure(f"Cannot create a temporary archive in {dest_dir}: {e}") from e
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        files = sorted((p for p in staging.rglob("*") if p.is_file()),
                       key=lambda p: p.relative_to(staging).as_posix())
        with zipfile.ZipFile(tmp_path, 'w', zipfile.ZIP_STORED) as zip_out:
            for file_path in files:
                info = zipfile.ZipInfo(file_path.relative_to(staging).as_posix(), date_time=REPACK_DATE_TIME)
                info.compress_type = zipfile.ZIP_STORED
                info.external_attr = REPACK_FILE_MODE << 16
                with open(file_path, 'rb') as src, zip_out.open(info, 'w') as dst:
                    while True:
                        chunk = src.read(1024 * 1024)
                        if not chunk:
                            break
                        dst.write(chunk)
    except (OSError, zipfile.LargeZipFile, ValueError) as e:
        tmp_path.unlink(missing_ok=True)
        raise RepackFailure(f"Failed to repack into {tmp_path.name}: {e}") from e
    return tmp_path


def apply_size_gate(original, original_size, candidate):
    """Replace ``original`` with ``candidate`` only if the candidate is strictly smaller.

    Returns ``(accepted, candidate_size)``. A rejected candidate is deleted and
    the original is left as it was.
    """
    candidate = Path(candidate)
    candidate_size = candidate.stat().st_size if candidate.exists() else 0
    if 0 < candidate_size < original_size:
        # mkstemp creates 0600 files; keep the original's permissions
        shutil.copymode(original, candidate)
        os.replace(candidate, original)
        return True, candidate_size
    candidate.unlink(missing_ok=True)
    return False, candidate_size
