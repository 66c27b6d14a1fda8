from __future__ import annotations

from pathlib import Path

import pytest

from batsched.config import LedgerSettings
from batsched.errors import DeviceBusyError, LedgerError
from batsched.ledger import (
    ActiveJob,
    FileLedgerStore,
    Ledger,
    MemoryLedgerStore,
    RecordFormatError,
    TerminalRecord,
    TerminalStatus,
)
from batsched.ledger.records import (
    decode_active_job,
    decode_queue_entry,
    decode_terminal_record,
    encode_active_job,
    encode_terminal_record,
)
from batsched.windows import WindowDescriptor


def _win(name: str, group: str = "lig-a", category: str = "rest") -> WindowDescriptor:
    return WindowDescriptor.from_path(Path("/fe") / group / category / name)


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_record_lines_match_tracking_format():
    w = _win("m03")
    job = ActiveJob(w, device=1, pid=4242, started_at=1700000000)
    assert encode_active_job(job) == "/fe/lig-a/rest/m03|lig-a|rest|m|03|1|4242|1700000000"
    assert decode_active_job(encode_active_job(job)) == job

    rec = TerminalRecord(w, device=1, pid=4242, duration=95, status=TerminalStatus.INCOMPLETE)
    assert encode_terminal_record(rec).endswith("|1|4242|95|INCOMPLETE")
    assert decode_terminal_record(encode_terminal_record(rec)) == rec


@pytest.mark.parametrize(
    "line",
    [
        "/fe/lig-a/rest/m00|lig-a|rest|m",
        "/fe/lig-a/rest/m00|lig-a|rest|m|zz",
    ],
)
def test_malformed_queue_lines(line):
    with pytest.raises(RecordFormatError):
        decode_queue_entry(line)


def test_malformed_terminal_status():
    with pytest.raises(RecordFormatError, match="status"):
        decode_terminal_record("/fe/lig-a/rest/m00|lig-a|rest|m|00|0|1|5|DONE")


def test_enqueue_dequeue_fifo():
    ledger = Ledger(MemoryLedgerStore())
    for name in ("m00", "m01", "m02"):
        ledger.enqueue(_win(name))

    assert ledger.queued_count == 3
    assert ledger.dequeue_front().label == "lig-a/rest/m00"
    assert ledger.dequeue_front().label == "lig-a/rest/m01"
    assert ledger.queued_count == 1


def test_enqueue_rejects_queued_or_active():
    ledger = Ledger(MemoryLedgerStore())
    w = _win("m00")
    ledger.enqueue(w)
    with pytest.raises(LedgerError, match="already queued"):
        ledger.enqueue(w)

    ledger.dequeue_front()
    ledger.promote_to_active(ActiveJob(w, 0, 11, 0))
    with pytest.raises(LedgerError, match="already active"):
        ledger.enqueue(w)


def test_enqueue_many_returns_rejected_and_writes_once():
    store = MemoryLedgerStore()
    ledger = Ledger(store)
    ledger.enqueue(_win("m00"))
    writes = store.writes

    rejected = ledger.enqueue_many([_win("m00"), _win("m01"), _win("m01"), _win("m02")])

    assert [w.label for w in rejected] == ["lig-a/rest/m00", "lig-a/rest/m01"]
    assert [w.label for w in ledger.queued] == ["lig-a/rest/m00", "lig-a/rest/m01", "lig-a/rest/m02"]
    assert store.writes == writes + 1


def test_promote_enforces_device_and_identity():
    ledger = Ledger(MemoryLedgerStore())
    ledger.promote_to_active(ActiveJob(_win("m00"), 0, 11, 0))

    with pytest.raises(DeviceBusyError) as err:
        ledger.promote_to_active(ActiveJob(_win("m01"), 0, 12, 0))
    assert err.value.device == 0
    with pytest.raises(LedgerError, match="already active"):
        ledger.promote_to_active(ActiveJob(_win("m00"), 1, 13, 0))

    ledger.enqueue(_win("m02"))
    with pytest.raises(LedgerError, match="still queued"):
        ledger.promote_to_active(ActiveJob(_win("m02"), 1, 14, 0))
    assert ledger.active_count == 1


def test_retire_moves_job_to_terminal_collection():
    clock = Clock(1000)
    ledger = Ledger(MemoryLedgerStore(), clock=clock)
    ok = ActiveJob(_win("m00"), 0, 11, 900)
    bad = ActiveJob(_win("m01"), 1, 12, 950)
    ledger.promote_to_active(ok)
    ledger.promote_to_active(bad)

    rec = ledger.retire(ok, TerminalStatus.SUCCESS)
    assert rec.duration == 100
    assert ledger.retire(bad, TerminalStatus.INCOMPLETE).duration == 50

    assert ledger.counts() == {"queued": 0, "active": 0, "completed": 1, "failed": 1}
    assert ledger.failed[0].status is TerminalStatus.INCOMPLETE
    assert ledger.is_idle
    with pytest.raises(LedgerError, match="not active"):
        ledger.retire(ok, TerminalStatus.SUCCESS)


def test_requeue_failed_by_status():
    ledger = Ledger(MemoryLedgerStore(), clock=Clock())
    for i, status in enumerate(
        (TerminalStatus.FAILED, TerminalStatus.INCOMPLETE, TerminalStatus.SUCCESS)
    ):
        job = ActiveJob(_win(f"m0{i}"), i, 100 + i, 0)
        ledger.promote_to_active(job)
        ledger.retire(job, status)

    requeued = ledger.requeue_failed([TerminalStatus.FAILED])
    assert [w.label for w in requeued] == ["lig-a/rest/m00"]
    assert [r.status for r in ledger.failed] == [TerminalStatus.INCOMPLETE]

    assert [w.label for w in ledger.requeue_failed()] == ["lig-a/rest/m01"]
    assert ledger.failed_count == 0
    assert ledger.completed_count == 1
    assert [w.label for w in ledger.queued] == ["lig-a/rest/m00", "lig-a/rest/m01"]
    assert ledger.requeue_failed() == []


def test_clear_keeps_terminal_when_asked():
    ledger = Ledger(MemoryLedgerStore(), clock=Clock())
    job = ActiveJob(_win("m00"), 0, 11, 0)
    ledger.promote_to_active(job)
    ledger.retire(job, TerminalStatus.SUCCESS)
    ledger.enqueue(_win("m01"))
    ledger.promote_to_active(ActiveJob(_win("m02"), 0, 12, 0))

    ledger.clear(keep_terminal=True)
    assert ledger.counts() == {"queued": 0, "active": 0, "completed": 1, "failed": 0}

    ledger.clear()
    assert ledger.completed_count == 0


def test_pause_flag_is_read_from_store():
    store = MemoryLedgerStore()
    ledger = Ledger(store)
    assert not ledger.paused
    store.set_paused(True)
    assert ledger.paused
    ledger.resume()
    assert not store.is_paused()


# ---------- file store ----------
def test_file_store_layout_and_persistence(tmp_path):
    root = tmp_path / ".automation_tracking"
    store = FileLedgerStore(root)
    store.initialize()
    assert sorted(p.name for p in root.iterdir()) == [
        "active_jobs.txt",
        "completed_jobs.txt",
        "failed_jobs.txt",
        "job_queue.txt",
    ]

    ledger = Ledger(store, clock=Clock(1010))
    ledger.enqueue(_win("m00"))
    ledger.enqueue(_win("m01"))
    job = ActiveJob(ledger.dequeue_front(), 0, 77, 1000)
    ledger.promote_to_active(job)

    assert (root / "job_queue.txt").read_text() == "/fe/lig-a/rest/m01|lig-a|rest|m|01\n"
    assert (root / "active_jobs.txt").read_text() == "/fe/lig-a/rest/m00|lig-a|rest|m|00|0|77|1000\n"

    ledger.retire(job, TerminalStatus.FAILED)
    assert (root / "failed_jobs.txt").read_text().strip().endswith("|0|77|10|FAILED")
    assert (root / "active_jobs.txt").read_text() == ""
    assert not list(root.glob(".*.tmp"))

    reopened = Ledger(FileLedgerStore(root))
    assert reopened.counts() == {"queued": 1, "active": 0, "completed": 0, "failed": 1}


def test_file_store_pause_marker(tmp_path):
    settings = LedgerSettings(pause_marker=".hold")
    store = FileLedgerStore(tmp_path / "track", settings)
    store.set_paused(True)
    assert (tmp_path / "track" / ".hold").exists()
    assert store.is_paused()
    store.set_paused(False)
    assert not store.is_paused()


def test_reload_skips_malformed_lines(tmp_path, log_messages):
    store = FileLedgerStore(tmp_path)
    store.initialize()
    (tmp_path / "job_queue.txt").write_text(
        "/fe/lig-a/rest/m00|lig-a|rest|m|00\n"
        "garbage\n"
        "\n"
        "/fe/lig-a/rest/m01|lig-a|rest|m|01\n"
    )

    ledger = Ledger(store)

    assert [w.label for w in ledger.queued] == ["lig-a/rest/m00", "lig-a/rest/m01"]
    assert any("malformed queue record" in m for m in log_messages)


def test_reload_repairs_interrupted_retire(tmp_path):
    store = FileLedgerStore(tmp_path)
    store.initialize()
    (tmp_path / "active_jobs.txt").write_text(
        "/fe/lig-a/rest/m00|lig-a|rest|m|00|0|77|1000\n"
        "/fe/lig-a/rest/m01|lig-a|rest|m|01|1|78|1000\n"
    )
    (tmp_path / "completed_jobs.txt").write_text(
        "/fe/lig-a/rest/m00|lig-a|rest|m|00|0|77|10|SUCCESS\n"
    )

    ledger = Ledger(store)

    assert [j.pid for j in ledger.active] == [78]
    assert (tmp_path / "active_jobs.txt").read_text() == "/fe/lig-a/rest/m01|lig-a|rest|m|01|1|78|1000\n"


def test_file_store_remove(tmp_path):
    store = FileLedgerStore(tmp_path / "track")
    store.initialize()
    store.set_paused(True)
    store.remove()
    assert not (tmp_path / "track").exists()
