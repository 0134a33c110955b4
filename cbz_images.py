from enum import Enum
from pathlib import Path

from rich.markup import escape

from cbz_log import ConversionFailure, log

CONVERTIBLE_EXTS = ('.png', '.gif', '.bmp', '.webp', '.tif', '.tiff')
JPEG_EXTS = ('.jpg', '.jpeg')
DEFAULT_QUALITY = 90


class ConversionPolicy(Enum):
    PARTIAL = "partial"  # fail the job only when every conversion failed
    STRICT = "strict"    # any failed conversion fails the job


class NormalizeReport:
    """What the normalizer did inside one staging directory."""

    def __init__(self):
        self.converted = []
        self.failed = []
        self.jpeg_untouched = 0
        self.skipped = False
        self.would_convert = 0

    @property
    def attempted(self):
        return len(self.converted) + len(self.failed)

    def summary(self):
        if self.skipped:
            return "transcoder unavailable, normalization skipped"
        parts = [f"{len(self.converted)} converted"]
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        if self.would_convert:
            parts.append(f"{self.would_convert} to convert")
        parts.append(f"{self.jpeg_untouched} JPEG untouched")
        return ", ".join(parts)


def find_convertible_images(staging):
    """Split the files under ``staging`` into convertible images and a JPEG count."""
    convertible = []
    jpeg_count = 0
    for p in sorted(Path(staging).rglob("*")):
        if not p.is_file():
            continue
        ext = p.suffix.lower()
        if ext in CONVERTIBLE_EXTS:
            convertible.append(p)
        elif ext in JPEG_EXTS:
            jpeg_count += 1
    return convertible, jpeg_count


def jpeg_destination(src_path):
    """``page.png`` -> ``page.jpg``, or ``page_1.jpg``, ``page_2.jpg``... if taken."""
    dest_path = src_path.with_suffix(".jpg")
    counter = 1
    while dest_path.exists():
        dest_path = src_path.with_name(f"{src_path.stem}_{counter}.jpg")
        counter += 1
    return dest_path


def convert_single_image(src_path, transcoder, quality):
    """Transcode one image to JPEG, removing the source only once the JPEG is on disk."""
    dest_path = jpeg_destination(src_path)
    try:
        transcoder.transcode(src_path, dest_path, quality)
    except ConversionFailure:
        # dest_path did not exist before; whatever is there now is partial
        dest_path.unlink(missing_ok=True)
        raise
    except OSError as e:
        dest_path.unlink(missing_ok=True)
        raise ConversionFailure(f"{src_path.name}: {e}") from e

    if not dest_path.exists() or dest_path.stat().st_size == 0:
        dest_path.unlink(missing_ok=True)
        raise ConversionFailure(f"{src_path.name}: transcoder reported success but wrote no output")

    src_path.unlink()
    return dest_path


def normalize_images(staging, transcoder, quality=DEFAULT_QUALITY, policy=ConversionPolicy.PARTIAL, dry_run=False):
    """Rewrite every PNG/GIF/BMP/WebP/TIFF under ``staging`` as JPEG.

    Existing JPEGs are left alone to avoid a second lossy pass. With no
    transcoder the step is skipped and flagged in the report. Failed files
    keep their source; whether that fails the job depends on ``policy``.
    """
    report = NormalizeReport()
    convertible, report.jpeg_untouched = find_convertible_images(staging)

    if transcoder is None:
        report.skipped = True
        return report

    if dry_run:
        report.would_convert = len(convertible)
        log(f"   Would convert {len(convertible)} image(s) to JPEG (quality {quality})", level="debug")
        return report

    for src_path in convertible:
        try:
            dest_path = convert_single_image(src_path, transcoder, quality)
        except ConversionFailure as e:
            log(f"[red]   ❌ Failed to convert {escape(src_path.name)}: {escape(str(e))}", level="warning")
            report.failed.append((src_path, str(e)))
            if policy == ConversionPolicy.STRICT:
                raise ConversionFailure(f"Conversion failed for {src_path.name}: {e}") from e
            continue
        report.converted.append(dest_path)
        log(f"   🖼️  Converted image: {escape(src_path.name)} → {escape(dest_path.name)}", level="debug")

    if report.failed and not report.converted:
        raise ConversionFailure(f"All {len(report.failed)} image conversion(s) failed")
    return report
