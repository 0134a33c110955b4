import sys
import threading
import zipfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import cbz_log
from cbz_log import ConversionFailure, ExtractionFailure
from cbz_tools import Decompressor, Transcoder

IMAGE_MAGICS = (b"\x89PNG", b"GIF8", b"BM", b"RIFF", b"II*\x00", b"MM\x00*")
RAR4 = b"Rar!\x1a\x07\x00"
RAR5 = b"Rar!\x1a\x07\x01\x00"


def png_bytes(size=4000):
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * size


def jpeg_bytes(size=32):
    return b"\xff\xd8\xff\xe0" + b"J" * size + b"\xff\xd9"


class FakeTranscoder(Transcoder):
    """Writes a tiny JPEG for anything that starts with a known image signature."""

    name = "fake-transcoder"

    def __init__(self, write_output=True, die_midway=()):
        self.write_output = write_output
        # source names for which a truncated JPEG is written before failing
        self.die_midway = set(die_midway)
        self.calls = []
        self._lock = threading.Lock()

    def transcode(self, source, dest, quality):
        with self._lock:
            self.calls.append((Path(source), Path(dest), quality))
        if Path(source).name in self.die_midway:
            Path(dest).write_bytes(b"\xff\xd8\xff\xe0partial")
            raise ConversionFailure("magick timed out after 600s")
        data = Path(source).read_bytes()
        if not data.startswith(IMAGE_MAGICS):
            raise ConversionFailure(f"{Path(source).name}: not a decodable image")
        if self.write_output:
            Path(dest).write_bytes(jpeg_bytes())


class FakeDecompressor(Decompressor):
    """Pretends to unrar by writing a fixed set of files into the destination."""

    name = "fake-unrar"

    def __init__(self, entries=None, fail=False):
        self.entries = entries or {}
        self.fail = fail
        self.calls = []

    def decompress(self, source, dest_dir):
        self.calls.append((Path(source), Path(dest_dir)))
        if self.fail:
            raise ExtractionFailure("unrar exited with code 3: CRC failed")
        for name, data in self.entries.items():
            target = Path(dest_dir) / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)


def write_zip(path, entries, compression=zipfile.ZIP_STORED):
    with zipfile.ZipFile(path, 'w', compression) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return Path(path)


@pytest.fixture(autouse=True)
def quiet_logging(tmp_path, monkeypatch):
    monkeypatch.setattr(cbz_log, "LOG_FILE", str(tmp_path / "test.log"))
    monkeypatch.setattr(cbz_log, "VERBOSE", False)
    monkeypatch.setattr(cbz_log, "QUIET", True)
    monkeypatch.setattr(cbz_log, "SUPPRESS_SKIPPED", True)
    monkeypatch.setattr(cbz_log, "DRY_RUN", False)


@pytest.fixture()
def transcoder():
    return FakeTranscoder()


@pytest.fixture()
def staging_root(tmp_path):
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture()
def library(tmp_path):
    root = tmp_path / "library"
    root.mkdir()
    return root
