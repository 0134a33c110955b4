"""Worklist builder: find comic archives worth optimizing under a directory."""
import zipfile
from pathlib import Path

from rich.markup import escape

from cbz_archive import ArchiveType, classify_archive
from cbz_images import CONVERTIBLE_EXTS, JPEG_EXTS
from cbz_log import log

ARCHIVE_EXTS = ('.cbz', '.cbr')
DEFAULT_MIN_PERCENT = 50.0
WORKLIST_SEPARATOR = " : "


class ConvertibleShareThreshold:
    """Eligible when at least ``min_percent`` of the archive's images are convertible."""

    def __init__(self, min_percent=DEFAULT_MIN_PERCENT):
        self.min_percent = min_percent

    def __call__(self, convertible, total):
        if total == 0 or convertible == 0:
            return False
        return (convertible / total) * 100 >= self.min_percent


def count_images(zip_path):
    """Return ``(convertible, total)`` image counts from a ZIP's directory listing."""
    convertible = total = 0
    with zipfile.ZipFile(zip_path, 'r') as zf:
        for name in zf.namelist():
            ext = Path(name).suffix.lower()
            if ext in CONVERTIBLE_EXTS:
                convertible += 1
                total += 1
            elif ext in JPEG_EXTS:
                total += 1
    return convertible, total


def describe_archive(path, policy):
    """Return the worklist description for ``path``, or None when it is not worth processing."""
    archive_type = classify_archive(path)
    suffix = path.suffix.lower()

    if archive_type == ArchiveType.RAR:
        if suffix == '.cbz':
            return "RAR archive with .cbz extension"
        return None
    if archive_type != ArchiveType.ZIP:
        log(f"[yellow]⚠️ Skipping unrecognized archive: {escape(str(path))}", msg_type="skipped")
        return None

    try:
        convertible, total = count_images(path)
    except zipfile.BadZipFile as e:
        log(f"[red]❌ Cannot list {escape(str(path))}: {e}", level="error")
        return None
    if not policy(convertible, total):
        return None
    percent = (convertible / total) * 100
    description = f"{convertible}/{total} images ({percent:.1f}%) in convertible formats"
    if suffix == '.cbr':
        description = f"ZIP archive with .cbr extension, {description}"
    return description


def scan_directory(root, policy=None):
    """Walk ``root`` and return ``(path, description)`` pairs for eligible archives."""
    policy = policy or ConvertibleShareThreshold()
    root = Path(root).resolve()
    found = []
    for path in sorted(root.rglob("*")):
        if path.suffix.lower() not in ARCHIVE_EXTS or not path.is_file():
            continue
        try:
            description = describe_archive(path, policy)
        except OSError as e:
            log(f"[red]❌ Cannot read {escape(str(path))}: {e}", level="error")
            continue
        if description:
            found.append((str(path), description))
    log(f"🔎 Found {len(found)} archive(s) worth optimizing under '{escape(str(root))}'.")
    return found


def write_worklist(entries, worklist_path):
    with open(worklist_path, 'w', encoding='utf-8') as f:
        for path, description in entries:
            f.write(f"{path}{WORKLIST_SEPARATOR}{description}\n")
