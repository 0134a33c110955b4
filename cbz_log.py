import threading
from pathlib import Path
from rich.console import Console

LOG_FILE = "cbz_optimize.log"

console = Console()
VERBOSE = True
QUIET = False
SUPPRESS_SKIPPED = False
DRY_RUN = False

_file_lock = threading.Lock()


class CbzOptError(Exception):
    """Base class for every error raised by the optimizer."""

    kind = "Error"


class MissingFile(CbzOptError):
    kind = "MissingFile"


class UnrecognizedContainer(CbzOptError):
    kind = "UnrecognizedContainer"


class ExtractionFailure(CbzOptError):
    kind = "ExtractionFailure"


class ConversionFailure(CbzOptError):
    kind = "ConversionFailure"


class RepackFailure(CbzOptError):
    kind = "RepackFailure"


class LedgerIOFailure(CbzOptError):
    """The ledger could not be read or written. Always run-fatal."""

    kind = "LedgerIOFailure"


class WorklistError(CbzOptError):
    kind = "WorklistError"


def configure_logging(verbose=True, quiet=False, suppress_skipped=False, dry_run=False, log_file=None):
    """Set the console/log-file behaviour for the whole process (called once from main)."""
    global VERBOSE, QUIET, SUPPRESS_SKIPPED, DRY_RUN, LOG_FILE
    VERBOSE = verbose and not quiet
    QUIET = quiet
    SUPPRESS_SKIPPED = suppress_skipped or quiet
    DRY_RUN = dry_run
    if log_file is not None:
        LOG_FILE = str(log_file)


def _append_to_file(line):
    if not LOG_FILE:
        return
    with _file_lock:
        with open(LOG_FILE, 'a', encoding='utf-8') as f:
            f.write(line + "\n")


def log(msg, level="info", msg_type="general"):
    """Log messages to console and log file, with optional [DRY RUN] prefix"""
    log_prefix = "[DRY RUN] " if DRY_RUN else ""
    full_msg = f"{log_prefix}{msg}"

    if msg_type == "skipped" and SUPPRESS_SKIPPED and not DRY_RUN:
        _append_to_file(full_msg)
        return

    if level == "error" or level == "warning":
        console.print(full_msg)
    elif not QUIET and (VERBOSE or level != "debug"):
        console.print(full_msg)

    _append_to_file(full_msg)


def log_file_path():
    return Path(LOG_FILE).resolve() if LOG_FILE else None
