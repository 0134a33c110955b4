"""Persisted per-archive job ledger.

The ledger is a ``;``-delimited text file::

    path;original_size;processed_at;status;optimized_size

It is loaded whole at the start of a run and written whole at the end. Only
the coordinating thread touches it; workers hand back ``JobOutcome`` values.
"""
import csv
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from rich.markup import escape

from cbz_log import LedgerIOFailure, log

LEDGER_FILE = "optimized_archives.csv"
LEDGER_COLUMNS = ("path", "original_size", "processed_at", "status", "optimized_size")
DELIMITER = ";"


class JobStatus(Enum):
    PENDING = "pending"
    ONGOING = "ongoing"
    SUCCESS = "success"
    FAIL = "fail"


class OngoingPolicy(Enum):
    SKIP = "skip"    # an ongoing record counts as claimed by another (or a crashed) run
    RETRY = "retry"  # an ongoing record is treated as abandoned and processed again


@dataclass(frozen=True)
class JobOutcome:
    path: str
    original_size: int
    processed_at: str
    status: JobStatus
    optimized_size: int = 0
    reason: str = ""
    error: str = ""

    @property
    def bytes_saved(self):
        if self.status != JobStatus.SUCCESS:
            return 0
        return self.original_size - self.optimized_size

    def to_row(self):
        return [self.path, str(self.original_size), self.processed_at, self.status.value, str(self.optimized_size)]


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


class JobStatusStore:
    def __init__(self, path=LEDGER_FILE, ongoing_policy=OngoingPolicy.SKIP):
        self.path = Path(path)
        self.ongoing_policy = ongoing_policy
        self._records = {}
        # paths this store claimed; with --claim other processes own the rest
        self._claimed = set()

    def __len__(self):
        return len(self._records)

    def __contains__(self, path):
        return str(path) in self._records

    def records(self):
        return list(self._records.values())

    def load(self):
        """Read the ledger into memory. A missing ledger is an empty one."""
        if not self.path.exists():
            log(f"No ledger at {escape(str(self.path))}, starting with an empty one.", level="debug")
        self._records = self._read_records()
        self._claimed = set()
        return self

    def _read_records(self):
        records = {}
        if not self.path.exists():
            return records
        try:
            with open(self.path, 'r', encoding='utf-8', newline='') as f:
                rows = list(csv.reader(f, delimiter=DELIMITER))
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise LedgerIOFailure(f"Could not read ledger {self.path}: {e}") from e

        if not rows:
            return records
        if tuple(rows[0]) != LEDGER_COLUMNS:
            raise LedgerIOFailure(f"Unexpected ledger header in {self.path}: {DELIMITER.join(rows[0])}")
        for line_no, row in enumerate(rows[1:], start=2):
            if not row:
                continue
            outcome = self._parse_row(row, line_no)
            records[outcome.path] = outcome
        log(f"Loaded {len(records)} ledger record(s) from {escape(str(self.path))}", level="debug")
        return records

    def _parse_row(self, row, line_no):
        if len(row) != len(LEDGER_COLUMNS):
            raise LedgerIOFailure(f"{self.path}:{line_no}: expected {len(LEDGER_COLUMNS)} fields, got {len(row)}")
        path, original_size, processed_at, status, optimized_size = row
        if not path:
            raise LedgerIOFailure(f"{self.path}:{line_no}: empty path")
        try:
            status = JobStatus(status.strip().lower())
        except ValueError:
            raise LedgerIOFailure(f"{self.path}:{line_no}: unknown status {status!r}") from None
        try:
            original_size = int(original_size) if original_size.strip() else 0
            optimized_size = int(optimized_size) if optimized_size.strip() else 0
        except ValueError:
            raise LedgerIOFailure(f"{self.path}:{line_no}: sizes must be integers") from None
        return JobOutcome(path, original_size, processed_at, status, optimized_size)

    def lookup(self, path):
        return self._records.get(str(path))

    def should_skip(self, path):
        record = self.lookup(path)
        if record is None:
            return False
        if record.status == JobStatus.SUCCESS:
            return True
        if record.status == JobStatus.ONGOING:
            return self.ongoing_policy == OngoingPolicy.SKIP
        return False

    def claim(self, paths):
        """Mark ``paths`` as ongoing and persist, before any work is dispatched."""
        stamp = now_iso()
        for path in paths:
            existing = self.lookup(path)
            original_size = existing.original_size if existing else 0
            self._records[str(path)] = JobOutcome(str(path), original_size, stamp, JobStatus.ONGOING)
            self._claimed.add(str(path))
        self._adopt_other_writers()
        self.persist()

    def merge(self, outcomes):
        """Apply outcomes in memory. A success record is never overwritten."""
        applied = 0
        for outcome in outcomes:
            existing = self._records.get(outcome.path)
            if existing is not None and existing.status == JobStatus.SUCCESS:
                log(f"[yellow]⚠️ Ignoring outcome for already optimized archive: {escape(outcome.path)}", level="warning")
                continue
            self._records[outcome.path] = outcome
            applied += 1
        return applied

    def _adopt_other_writers(self):
        """Take the on-disk version of every record this store did not claim.

        Another process running with claims may have rewritten the ledger since
        it was loaded; its rows survive this store's final write.
        """
        on_disk = self._read_records()
        for path, record in on_disk.items():
            if path not in self._claimed:
                self._records[path] = record

    def merge_and_persist(self, outcomes):
        outcomes = list(outcomes)
        if self._claimed:
            self._adopt_other_writers()
        applied = self.merge(outcomes)
        if applied == 0 and self.path.exists():
            log("Ledger unchanged, not rewriting it.", level="debug")
            return 0
        self.persist()
        return applied

    def persist(self):
        """Write the full ledger atomically (temp file in the same directory, then rename)."""
        directory = self.path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
            with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
                writer = csv.writer(f, delimiter=DELIMITER, lineterminator="\n")
                writer.writerow(LEDGER_COLUMNS)
                for record in self._records.values():
                    writer.writerow(record.to_row())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise LedgerIOFailure(f"Could not write ledger {self.path}: {e}") from e

    def reset(self, paths=None, statuses=None):
        """Forget records so the next run processes them again. Returns the removed paths."""
        paths = {str(p) for p in paths} if paths else None
        statuses = set(statuses) if statuses else None
        removed = []
        for path, record in list(self._records.items()):
            if paths is not None and path not in paths:
                continue
            if statuses is not None and record.status not in statuses:
                continue
            del self._records[path]
            removed.append(path)
        return removed

    def counts(self):
        counts = {status: 0 for status in JobStatus}
        for record in self._records.values():
            counts[record.status] += 1
        return counts
