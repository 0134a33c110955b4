import argparse
import os
from rich.console import Console
from rich.markup import escape

from cbz_ledger import LEDGER_FILE, JobStatus, JobStatusStore
from cbz_log import LedgerIOFailure

# --- Initial Setup ---
console = Console()

def reset_ledger(ledger_path, paths=None, statuses=None, dry_run=False):
    """
    Removes ledger records (by path and/or status) so the next run processes those archives again.
    Returns the list of removed paths, or None if the ledger could not be used.
    """
    if not os.path.exists(ledger_path):
        console.print(f"[red]Error: Ledger file not found at '{ledger_path}'. Nothing to reset.[/red]")
        return None

    console.print(f"Resetting records in ledger: [cyan]{ledger_path}[/cyan]")

    try:
        store = JobStatusStore(ledger_path).load()
        removed = store.reset(paths=paths, statuses=statuses)

        if not removed:
            console.print("[green]No matching records. Ledger left unchanged.[/green]")
            return removed

        for path in removed:
            console.print(f"  [yellow]{'Would reset' if dry_run else 'Reset'}:[/yellow] {escape(path)}")
        if dry_run:
            console.print(f"[bold yellow]DRY RUN[/bold yellow] - {len(removed)} record(s) would be reset.")
        else:
            store.persist()
            console.print(f"[bold green]Reset {len(removed)} record(s). They will be processed on the next run.[/bold green]")
        return removed

    except LedgerIOFailure as e:
        console.print(f"[red]A ledger error occurred: {escape(str(e))}[/red]")
        return None


def main(argv=None):
    """Main function to run the reset."""
    parser = argparse.ArgumentParser(
        description="Operator tool to reset ledger records (e.g. archives stranded as 'ongoing' by a crashed run).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Archive paths to reset. Without paths, --status selects the records."
    )
    parser.add_argument(
        "--ledger",
        default=LEDGER_FILE,
        help="Path to the ledger file."
    )
    parser.add_argument(
        "--status",
        action="append",
        choices=[s.value for s in JobStatus],
        help="Only reset records with this status (repeatable)."
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Reset every record matching --status, or the whole ledger."
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be reset without writing.")
    args = parser.parse_args(argv)

    if not args.paths and not args.status and not args.all:
        parser.error("give archive paths, --status, or --all")

    statuses = [JobStatus(s) for s in args.status] if args.status else None
    removed = reset_ledger(args.ledger, paths=args.paths or None, statuses=statuses, dry_run=args.dry_run)
    return 1 if removed is None else 0


if __name__ == "__main__":
    raise SystemExit(main())
