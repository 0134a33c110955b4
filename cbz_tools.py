"""External tools the pipeline shells out to.

Two narrow capabilities are used by the pipeline:

* ``Decompressor.decompress(source, dest_dir)`` expands a RAR archive.
* ``Transcoder.transcode(source, dest, quality)`` writes a JPEG copy of an image.

The process-backed implementations below are found once per run with
``find_decompressor()`` / ``find_transcoder()``; both return ``None`` when no
suitable binary is on the PATH so callers can run in a degraded mode.
Tests substitute in-memory fakes with the same two methods.
"""
import shutil
import subprocess
import sys
from pathlib import Path

from cbz_log import ConversionFailure, ExtractionFailure, log

SUBPROCESS_TIMEOUT = 600  # Seconds; large archives on slow disks can legitimately take minutes


class Decompressor:
    name = "decompressor"

    def decompress(self, source, dest_dir):
        raise NotImplementedError


class Transcoder:
    name = "transcoder"

    def transcode(self, source, dest, quality):
        raise NotImplementedError


def run_tool(cmd_list, timeout, error_cls):
    """Run an external command, turning every failure mode into ``error_cls``."""
    try:
        result = subprocess.run(cmd_list, check=False, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        raise error_cls(f"{cmd_list[0]} not found. Is it installed and in PATH?")
    except subprocess.TimeoutExpired:
        raise error_cls(f"{Path(cmd_list[0]).name} timed out after {timeout}s")
    if result.returncode != 0:
        stderr = (result.stderr or result.stdout or "").strip()
        raise error_cls(f"{Path(cmd_list[0]).name} exited with code {result.returncode}: {stderr[:300]}")
    return result


class UnrarDecompressor(Decompressor):
    """RAR extraction through ``unrar``."""

    name = "unrar"

    def __init__(self, executable="unrar", timeout=SUBPROCESS_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def decompress(self, source, dest_dir):
        # unrar wants the destination with a trailing separator
        dest = str(dest_dir).rstrip("/\\") + "/"
        run_tool([self.executable, "x", "-o+", "-idq", "-y", str(source), dest], self.timeout, ExtractionFailure)


class SevenZipDecompressor(Decompressor):
    """RAR extraction through ``7z``/``7zz``, used when unrar is not installed."""

    name = "7z"

    def __init__(self, executable="7z", timeout=SUBPROCESS_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def decompress(self, source, dest_dir):
        run_tool([self.executable, "x", "-y", f"-o{dest_dir}", str(source)], self.timeout, ExtractionFailure)


class MagickTranscoder(Transcoder):
    """JPEG encoding through ImageMagick.

    Only the first frame is encoded (animated GIF / multi-page TIFF would
    otherwise produce ``name-0.jpg``, ``name-1.jpg``...) and transparency is
    flattened onto white since JPEG has no alpha channel.
    """

    name = "magick"

    def __init__(self, executable="magick", timeout=SUBPROCESS_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def transcode(self, source, dest, quality):
        cmd = [
            self.executable, f"{source}[0]",
            "-background", "white", "-flatten",
            "-quality", str(quality),
            f"jpeg:{dest}",
        ]
        run_tool(cmd, self.timeout, ConversionFailure)


def find_decompressor(timeout=SUBPROCESS_TIMEOUT):
    for executable, cls in (("unrar", UnrarDecompressor), ("7z", SevenZipDecompressor), ("7zz", SevenZipDecompressor)):
        found = shutil.which(executable)
        if found:
            return cls(found, timeout=timeout)
    log("[yellow]⚠️ No RAR decompressor (unrar/7z) found in PATH. RAR-compressed archives will fail.", level="warning")
    return None


def find_transcoder(timeout=SUBPROCESS_TIMEOUT):
    found = shutil.which("magick")
    # IM6 only has "convert", which takes the same arguments. On Windows that
    # name belongs to the system FAT-to-NTFS converter.
    if not found and not sys.platform.startswith("win"):
        found = shutil.which("convert")
    if found:
        return MagickTranscoder(found, timeout=timeout)
    log("[yellow]⚠️ ImageMagick not found in PATH. Image normalization is disabled for this run.", level="warning")
    return None
