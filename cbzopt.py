import argparse
import shutil
import sys
import tempfile
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

from rich.markup import escape
from rich.progress import Progress, BarColumn, TextColumn, TimeRemainingColumn, SpinnerColumn

import cbz_log
from cbz_archive import ArchiveType, apply_size_gate, classify_archive, extract_archive, repack_archive
from cbz_images import DEFAULT_QUALITY, ConversionPolicy, normalize_images
from cbz_ledger import LEDGER_FILE, JobOutcome, JobStatus, JobStatusStore, OngoingPolicy, now_iso
from cbz_log import (CbzOptError, LedgerIOFailure, MissingFile, UnrecognizedContainer, WorklistError,
                     configure_logging, console, log)
from cbz_scan import DEFAULT_MIN_PERCENT, WORKLIST_SEPARATOR, ConvertibleShareThreshold, scan_directory, write_worklist
from cbz_tools import SUBPROCESS_TIMEOUT, find_decompressor, find_transcoder

# Default Constants (can be overwritten by args)
DEFAULT_THREADS = 4
SCRIPT_VERSION = "2.0"
STAGING_PREFIX = "cbzopt-"


@dataclass(frozen=True)
class WorkItem:
    path: str
    raw_descriptor: str = ""

    @classmethod
    def parse(cls, line):
        """Build a WorkItem from a ``<path> : <description>`` worklist line (None for blank lines)."""
        line = line.strip()
        if not line:
            return None
        path, sep, descriptor = line.partition(WORKLIST_SEPARATOR)
        return cls(path.strip(), descriptor.strip() if sep else "")


@dataclass(frozen=True)
class PipelineOptions:
    quality: int = DEFAULT_QUALITY
    conversion_policy: ConversionPolicy = ConversionPolicy.PARTIAL
    dry_run: bool = False
    staging_dir: str = None
    threads: int = DEFAULT_THREADS
    claim: bool = False


@dataclass(frozen=True)
class PipelineTools:
    decompressor: object = None
    transcoder: object = None


class RunSummary:
    def __init__(self):
        self.outcomes = []
        self.skipped = 0

    def count(self, status):
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def succeeded(self):
        return self.count(JobStatus.SUCCESS)

    @property
    def failed(self):
        return self.count(JobStatus.FAIL)

    @property
    def bytes_saved(self):
        return sum(o.bytes_saved for o in self.outcomes)


def dedupe_items(items):
    seen = set()
    unique = []
    for item in items:
        if item.path in seen:
            continue
        seen.add(item.path)
        unique.append(item)
    return unique


def load_worklist(worklist_path):
    """Parse a worklist file into WorkItems, dropping blank lines and repeated paths."""
    worklist_path = Path(worklist_path)
    if not worklist_path.is_file():
        raise WorklistError(f"Worklist not found: {worklist_path}")
    try:
        with open(worklist_path, 'r', encoding='utf-8') as f:
            items = [WorkItem.parse(line) for line in f]
    except (OSError, UnicodeDecodeError) as e:
        raise WorklistError(f"Could not read worklist {worklist_path}: {e}") from e
    return dedupe_items(item for item in items if item is not None)


def _outcome(item, original_size, status, optimized_size=0, reason="", error=""):
    return JobOutcome(item.path, original_size, now_iso(), status, optimized_size, reason, error)


def _remove_staging(staging):
    try:
        shutil.rmtree(staging)
    except OSError as e:
        log(f"[red]❌ Could not remove staging directory {escape(str(staging))}: {e}", level="error")


def process_archive(item, options, tools):
    """Run one archive through classify → extract → normalize → repack → size gate.

    Always returns exactly one JobOutcome; errors become ``fail`` outcomes.
    The staging directory and any leftover repacked archive are removed
    before returning.
    """
    start_time = time.monotonic()
    path = Path(item.path)
    original_size = 0
    staging = None
    candidate = None
    log(f"[bold]📦 Processing: {escape(item.path)}[/bold]", level="debug")

    try:
        archive_type = classify_archive(path)
        if archive_type == ArchiveType.MISSING:
            raise MissingFile(f"File not found: {item.path}")
        original_size = path.stat().st_size
        if archive_type == ArchiveType.UNKNOWN:
            raise UnrecognizedContainer(f"Neither a ZIP nor a RAR signature: {path.name}")
        if archive_type == ArchiveType.RAR and path.suffix.lower() == '.cbz':
            log(f"   🔧 {escape(path.name)} is RAR-compressed despite its .cbz extension", level="debug")

        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=options.staging_dir))
        entry_count = extract_archive(archive_type, path, staging, tools.decompressor)
        report = normalize_images(staging, tools.transcoder, options.quality, options.conversion_policy,
                                  dry_run=options.dry_run)
        if report.skipped:
            log(f"[yellow]   ⚠️ {escape(path.name)}: {report.summary()}", level="debug")

        if options.dry_run:
            return _outcome(item, original_size, JobStatus.PENDING,
                            reason=f"would repack {entry_count} file(s) ({report.summary()})")

        candidate = repack_archive(staging, path.parent)
        if not path.exists():
            raise MissingFile(f"File disappeared during processing: {item.path}")
        accepted, new_size = apply_size_gate(path, original_size, candidate)
        candidate = None
        duration = time.monotonic() - start_time

        if accepted:
            return _outcome(item, original_size, JobStatus.SUCCESS, new_size,
                            reason=f"{report.summary()} in {duration:.1f}s")
        return _outcome(item, original_size, JobStatus.FAIL, new_size,
                        reason=f"repacked size {new_size} is not smaller than {original_size} ({report.summary()})",
                        error="SizeGateRejected")

    except CbzOptError as e:
        return _outcome(item, original_size, JobStatus.FAIL, reason=str(e), error=e.kind)
    except OSError as e:
        return _outcome(item, original_size, JobStatus.FAIL, reason=str(e), error="IOError")
    except Exception as e:
        log(f"[red]❌❌ UNHANDLED EXCEPTION while processing {escape(item.path)}: {escape(str(e))}", level="error")
        log(f"[red]Traceback: {escape(traceback.format_exc())}", level="error")
        return _outcome(item, original_size, JobStatus.FAIL, reason=str(e), error=type(e).__name__)
    finally:
        if staging is not None:
            _remove_staging(staging)
        if candidate is not None:
            candidate.unlink(missing_ok=True)


def report_outcome(outcome):
    name = escape(outcome.path)
    if outcome.status == JobStatus.SUCCESS:
        saved = outcome.bytes_saved
        percent = (saved / outcome.original_size) * 100 if outcome.original_size > 0 else 0
        log(f"[green]✅ {name}: {outcome.original_size / (1024*1024):.2f} MB → "
            f"{outcome.optimized_size / (1024*1024):.2f} MB ({percent:.2f}% saved)")
    elif outcome.status == JobStatus.PENDING:
        log(f"   {name}: {escape(outcome.reason)}")
    elif outcome.error == "SizeGateRejected":
        log(f"[yellow]⚠️ {name}: kept original, {escape(outcome.reason)}", level="warning")
    else:
        log(f"[red]❌ {name}: {outcome.error}: {escape(outcome.reason)}", level="error")


def run_pipeline(items, store, options, tools):
    """Process every item the ledger does not skip and record the outcomes.

    Workers never touch the ledger; outcomes are merged and written once
    here after the pool has drained.
    """
    summary = RunSummary()
    todo = []
    for item in dedupe_items(items):
        if store.should_skip(item.path):
            summary.skipped += 1
            record = store.lookup(item.path)
            log(f"[yellow]⚠️ Skipping {record.status.value} archive: {escape(item.path)}", msg_type="skipped")
            continue
        todo.append(item)

    if not todo:
        log("Nothing to do, every archive on the worklist is already handled.")
        return summary

    if options.claim and not options.dry_run:
        store.claim([item.path for item in todo])

    with Progress(SpinnerColumn(), TextColumn("[cyan]{task.description}[/cyan]"), BarColumn(),
                  TextColumn("{task.completed}/{task.total} archives"), TimeRemainingColumn(),
                  console=console, disable=cbz_log.QUIET) as progress_bar:
        task_id = progress_bar.add_task("Optimizing archives...", total=len(todo))
        with ThreadPoolExecutor(max_workers=max(1, options.threads)) as executor:
            futures = {executor.submit(process_archive, item, options, tools): item for item in todo}
            for future in as_completed(futures):
                item = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    log(f"[red]❌ Worker crashed on {escape(item.path)}: {escape(str(e))}", level="error")
                    outcome = _outcome(item, 0, JobStatus.FAIL, reason=str(e), error=type(e).__name__)
                summary.outcomes.append(outcome)
                report_outcome(outcome)
                progress_bar.update(task_id, advance=1)

    if not options.dry_run:
        store.merge_and_persist(summary.outcomes)
    return summary


def items_for_target(target, min_percent, worklist_out=None):
    """A directory is scanned for archives; anything else is read as a worklist file."""
    target = Path(target)
    if target.is_dir():
        entries = scan_directory(target, ConvertibleShareThreshold(min_percent))
        if worklist_out:
            write_worklist(entries, worklist_out)
            log(f"Worklist written to: {escape(str(Path(worklist_out).resolve()))}")
        return dedupe_items(WorkItem(path, description) for path, description in entries)
    return load_worklist(target)


def print_summary(summary, total):
    log("\n🎉 [bold green]Optimization run finished![/bold green]")
    log(f"   Archives on worklist:     {total}")
    log(f"   Optimized (success):      {summary.succeeded}")
    log(f"   Failed / kept original:   {summary.failed}")
    log(f"   Skipped (ledger):         {summary.skipped}")
    dry = summary.count(JobStatus.PENDING)
    if dry:
        log(f"   Would process:            {dry}")
    saved = summary.bytes_saved
    log(f"   Total space saved:        {saved / (1024 ** 3):.3f} GB ({saved / (1024 ** 2):.2f} MB)")


def build_parser():
    parser = argparse.ArgumentParser(description="Convert non-JPEG images in comic archives to JPEG and repack them uncompressed, keeping the result only when it is smaller.")
    parser.add_argument("target", nargs="?", default=".", help="Worklist file, or a directory to scan for CBZ/CBR files (default: current directory)")

    action_group = parser.add_argument_group('Action Control')
    action_group.add_argument("--dry-run", action="store_true", help="Simulate processing without modifying archives or the ledger.")
    action_group.add_argument("--claim", action="store_true", help="Mark dispatched archives as 'ongoing' in the ledger before processing.")
    action_group.add_argument("--ongoing", choices=[p.value for p in OngoingPolicy], default=OngoingPolicy.SKIP.value, help="How to treat archives left 'ongoing' by an earlier run (default: skip)")
    action_group.add_argument("--conversion-policy", choices=[p.value for p in ConversionPolicy], default=ConversionPolicy.PARTIAL.value, help="'partial': fail an archive only if every image conversion failed; 'strict': fail on any failed image (default: partial)")

    tuning_group = parser.add_argument_group('Conversion Tuning')
    tuning_group.add_argument("--quality", type=int, default=DEFAULT_QUALITY, choices=range(1, 101), metavar="[1-100]", help=f"JPEG quality (default: {DEFAULT_QUALITY})")
    tuning_group.add_argument("--threads", type=int, default=DEFAULT_THREADS, help=f"Number of archives processed in parallel (default: {DEFAULT_THREADS})")
    tuning_group.add_argument("--tool-timeout", type=int, default=SUBPROCESS_TIMEOUT, help=f"Seconds before an unrar/7z/ImageMagick call is killed (default: {SUBPROCESS_TIMEOUT})")
    tuning_group.add_argument("--staging-dir", default=None, help="Directory for temporary extraction (default: system temp)")

    scan_group = parser.add_argument_group('Scanning')
    scan_group.add_argument("--min-percent", type=float, default=DEFAULT_MIN_PERCENT, help=f"Minimum share of convertible images for an archive to be listed when scanning (default: {DEFAULT_MIN_PERCENT})")
    scan_group.add_argument("--write-worklist", default=None, help="When scanning a directory, also write the worklist to this file.")

    output_group = parser.add_argument_group('Output Control')
    output_group.add_argument("--ledger", default=LEDGER_FILE, help=f"Ledger file (default: {LEDGER_FILE})")
    output_group.add_argument("--log-file", default=cbz_log.LOG_FILE, help=f"Log file (default: {cbz_log.LOG_FILE})")
    output_group.add_argument("--quiet", "-q", action="store_true", help="Suppress all console output except warnings and errors.")
    output_group.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging to console.")
    output_group.add_argument("--suppress-skipped", action="store_true", help="Suppress 'Skipping' messages from console.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    configure_logging(verbose=args.verbose or args.dry_run, quiet=args.quiet,
                      suppress_skipped=args.suppress_skipped, dry_run=args.dry_run, log_file=args.log_file)
    if args.dry_run:
        console.print("[bold yellow] DRY RUN MODE ENABLED [/bold yellow] - No actual changes will be made.")

    options = PipelineOptions(
        quality=args.quality,
        conversion_policy=ConversionPolicy(args.conversion_policy),
        dry_run=args.dry_run,
        staging_dir=args.staging_dir,
        threads=args.threads,
        claim=args.claim,
    )

    try:
        items = items_for_target(args.target, args.min_percent, args.write_worklist)
        store = JobStatusStore(args.ledger, OngoingPolicy(args.ongoing)).load()

        tools = PipelineTools(find_decompressor(args.tool_timeout), find_transcoder(args.tool_timeout))
        log(f"🛠️ Starting optimization of {len(items)} archive(s) with {options.threads} worker(s)...")
        log(f"   Script Version: {SCRIPT_VERSION}, JPEG quality: {options.quality}, Conversion policy: {options.conversion_policy.value}")
        log(f"   RAR support: {tools.decompressor.name if tools.decompressor else 'unavailable'}, "
            f"Transcoder: {tools.transcoder.name if tools.transcoder else 'unavailable (normalization skipped)'}")

        summary = run_pipeline(items, store, options, tools)
    except (LedgerIOFailure, WorklistError) as e:
        log(f"[red]❌ CRITICAL: {escape(str(e))}", level="error")
        return 1

    print_summary(summary, len(items))
    log(f"Log file written to: {cbz_log.log_file_path()}")
    if args.dry_run:
        console.print("[bold yellow]DRY RUN COMPLETE[/bold yellow] - No actual changes were made to files or the ledger.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
