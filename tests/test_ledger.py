import pytest

from cbz_ledger import JobOutcome, JobStatus, JobStatusStore, OngoingPolicy
from cbz_log import LedgerIOFailure

HEADER = "path;original_size;processed_at;status;optimized_size\n"


def write_ledger(path, *rows):
    path.write_text(HEADER + "".join(row + "\n" for row in rows), encoding="utf-8")
    return path


def test_missing_ledger_loads_empty_and_first_save_writes_header(tmp_path):
    ledger = tmp_path / "ledger.csv"
    store = JobStatusStore(ledger).load()
    assert len(store) == 0

    store.merge_and_persist([])

    assert ledger.read_text(encoding="utf-8") == HEADER


def test_load_and_lookup(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.csv",
                          "/comics/a.cbz;1000;2024-05-01T10:00:00;success;800",
                          "/comics/b.cbz;500;2024-05-01T10:00:05;fail;0")
    store = JobStatusStore(ledger).load()

    a = store.lookup("/comics/a.cbz")
    assert a.status == JobStatus.SUCCESS
    assert (a.original_size, a.optimized_size) == (1000, 800)
    assert a.bytes_saved == 200
    assert store.lookup("/comics/b.cbz").status == JobStatus.FAIL
    assert store.lookup("/comics/c.cbz") is None


@pytest.mark.parametrize("content", [
    "path,original_size,processed_at,status,optimized_size\n",
    HEADER + "/a.cbz;1000;2024-05-01;done;800\n",
    HEADER + "/a.cbz;1000;2024-05-01;success\n",
    HEADER + "/a.cbz;big;2024-05-01;success;800\n",
    HEADER + ";1000;2024-05-01;success;800\n",
])
def test_malformed_ledger_fails_fast(tmp_path, content):
    ledger = tmp_path / "ledger.csv"
    ledger.write_text(content, encoding="utf-8")
    with pytest.raises(LedgerIOFailure):
        JobStatusStore(ledger).load()


def test_should_skip_rules(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.csv",
                          "/s.cbz;10;t;success;5",
                          "/o.cbz;10;t;ongoing;0",
                          "/f.cbz;10;t;fail;0",
                          "/p.cbz;10;t;pending;0")
    skip = JobStatusStore(ledger, OngoingPolicy.SKIP).load()
    retry = JobStatusStore(ledger, OngoingPolicy.RETRY).load()

    assert skip.should_skip("/s.cbz") and retry.should_skip("/s.cbz")
    assert skip.should_skip("/o.cbz")
    assert not retry.should_skip("/o.cbz")
    for path in ("/f.cbz", "/p.cbz", "/unknown.cbz"):
        assert not skip.should_skip(path)
        assert not retry.should_skip(path)


def test_merge_never_overwrites_success(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.csv", "/s.cbz;10;t;success;5")
    store = JobStatusStore(ledger).load()

    applied = store.merge_and_persist([JobOutcome("/s.cbz", 10, "t2", JobStatus.FAIL)])

    assert applied == 0
    assert store.lookup("/s.cbz").status == JobStatus.SUCCESS


def test_merge_and_persist_round_trips_in_insertion_order(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.csv", "/old.cbz;10;t0;fail;0")
    store = JobStatusStore(ledger).load()

    store.merge_and_persist([
        JobOutcome("/new.cbz", 300, "t1", JobStatus.SUCCESS, 200, reason="not persisted"),
        JobOutcome("/old.cbz", 10, "t2", JobStatus.SUCCESS, 9),
    ])

    assert ledger.read_text(encoding="utf-8") == (
        HEADER + "/old.cbz;10;t2;success;9\n" + "/new.cbz;300;t1;success;200\n"
    )
    reloaded = JobStatusStore(ledger).load()
    assert reloaded.lookup("/new.cbz").reason == ""


def test_paths_with_delimiter_are_quoted(tmp_path):
    ledger = tmp_path / "ledger.csv"
    store = JobStatusStore(ledger).load()
    store.merge_and_persist([JobOutcome("/comics/a;b.cbz", 10, "t", JobStatus.SUCCESS, 5)])
    assert JobStatusStore(ledger).load().lookup("/comics/a;b.cbz").optimized_size == 5


def test_empty_batch_does_not_rewrite_existing_ledger(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.csv", "/s.cbz;10;2024-01-01 00:00:00;SUCCESS;5")
    before = ledger.read_bytes()
    JobStatusStore(ledger).load().merge_and_persist([])
    assert ledger.read_bytes() == before


def test_persist_failure_is_ledger_io_failure(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    store = JobStatusStore(blocker / "ledger.csv").load()
    with pytest.raises(LedgerIOFailure):
        store.merge_and_persist([JobOutcome("/a.cbz", 10, "t", JobStatus.FAIL)])


def test_claim_marks_paths_ongoing_on_disk(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.csv", "/f.cbz;10;t;fail;0")
    store = JobStatusStore(ledger).load()

    store.claim(["/f.cbz", "/n.cbz"])

    on_disk = JobStatusStore(ledger).load()
    assert on_disk.lookup("/f.cbz").status == JobStatus.ONGOING
    assert on_disk.lookup("/f.cbz").original_size == 10
    assert on_disk.lookup("/n.cbz").status == JobStatus.ONGOING


def test_claiming_runs_keep_each_others_rows(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.csv", "/old.cbz;10;t;fail;0")
    first = JobStatusStore(ledger).load()
    second = JobStatusStore(ledger).load()
    first.claim(["/a.cbz"])
    second.claim(["/b.cbz"])
    assert JobStatusStore(ledger).load().lookup("/a.cbz").status == JobStatus.ONGOING

    second.merge_and_persist([JobOutcome("/b.cbz", 100, "t2", JobStatus.SUCCESS, 80)])
    first.merge_and_persist([JobOutcome("/a.cbz", 200, "t3", JobStatus.FAIL)])

    on_disk = JobStatusStore(ledger).load()
    assert on_disk.lookup("/a.cbz").status == JobStatus.FAIL
    assert on_disk.lookup("/b.cbz").status == JobStatus.SUCCESS
    assert on_disk.lookup("/old.cbz").status == JobStatus.FAIL


def test_reset_by_status_and_path(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.csv",
                          "/s.cbz;10;t;success;5",
                          "/o.cbz;10;t;ongoing;0",
                          "/f.cbz;10;t;fail;0")
    store = JobStatusStore(ledger).load()

    assert store.reset(statuses=[JobStatus.ONGOING]) == ["/o.cbz"]
    assert store.reset(paths=["/s.cbz"]) == ["/s.cbz"]
    assert [r.path for r in store.records()] == ["/f.cbz"]
    assert store.counts()[JobStatus.FAIL] == 1
