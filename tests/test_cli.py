from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from batsched import __version__
from batsched.cli import cli
from batsched.errors import DeviceWaitTimeout, SchedulerInterrupted
from batsched.ledger import ActiveJob, FileLedgerStore, Ledger, TerminalStatus
from batsched.windows import WindowDescriptor

QUICK_SUCCESS = 'sleep 0.3\necho "Final Performance" > md-02.out\n'


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def quick_config(tmp_path: Path) -> Path:
    cfg = tmp_path / "sched.yaml"
    cfg.write_text(
        "devices:\n  max_wait_s: 30\n"
        "dispatch:\n  poll_interval_s: 0.1\n  start_grace_s: 0\n"
        "environment:\n  required_executables: []\n"
    )
    return cfg


def _ledger(fe_root: Path) -> Ledger:
    store = FileLedgerStore(fe_root / ".automation_tracking")
    store.initialize()
    return Ledger(store, clock=lambda: 1100.0)


def _seed(fe_root: Path) -> Ledger:
    ledger = _ledger(fe_root)
    win = lambda name: WindowDescriptor.from_path(fe_root / "lig-a" / "rest" / name)
    for name, status in (("m00", TerminalStatus.SUCCESS), ("m01", TerminalStatus.INCOMPLETE)):
        job = ActiveJob(win(name), 0, 100, 1000)
        ledger.promote_to_active(job)
        ledger.retire(job, status)
    ledger.promote_to_active(ActiveJob(win("m02"), 1, 4321, 1000))
    ledger.enqueue(win("m03"))
    return ledger


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_help_lists_commands(runner):
    result = runner.invoke(cli, ["-h"])
    assert result.exit_code == 0
    for name in ("run", "status", "devices", "report", "pause", "resume", "clear", "requeue-failed", "stop-jobs"):
        assert name in result.output


def test_run_scan_phase(runner, fe_root, make_window):
    make_window("lig-a", "rest", "m00")
    make_window("lig-b", "dd", "e00")

    result = runner.invoke(
        cli, ["run", "--base-dir", str(fe_root), "--phase", "scan", "--groups", "lig-b lig-zzz"]
    )

    assert result.exit_code == 0, result.output
    assert "Queued 1 window(s) from 1 group(s)." in result.output
    queue = (fe_root / ".automation_tracking" / "job_queue.txt").read_text().splitlines()
    assert len(queue) == 1 and queue[0].endswith("|lig-b|dd|e|00")


@pytest.mark.processes
def test_run_end_to_end(runner, fe_root, make_window, quick_config):
    make_window("lig-a", "rest", "m00", script=QUICK_SUCCESS)
    make_window("lig-a", "rest", "m01", script=QUICK_SUCCESS)
    make_window("lig-a", "dd", "e00", script="sleep 0.3\nexit 1\n")

    result = runner.invoke(
        cli,
        ["run", "-c", str(quick_config), "-b", str(fe_root), "--devices", "2"],
    )

    assert result.exit_code == 0, result.output
    assert "Dispatched 3 job(s) on 2 GPU(s)" in result.output
    assert "Totals: 2 completed, 1 failed" in result.output
    failed = (fe_root / ".automation_tracking" / "failed_jobs.txt").read_text()
    assert failed.strip().endswith("FAILED")
    assert (fe_root / "logs" / "automation.log").exists()


def test_run_exit_codes(runner, fe_root, make_window, monkeypatch):
    make_window("lig-a", "rest", "m00")

    def interrupted(cfg, **kwargs):
        raise SchedulerInterrupted("Dispatch halted by keyboard interrupt")

    monkeypatch.setattr("batsched.cli.run_cmds.run_automation", interrupted)
    result = runner.invoke(cli, ["run", "-b", str(fe_root), "--devices", "1"])
    assert result.exit_code == 130

    def timed_out(cfg, **kwargs):
        raise DeviceWaitTimeout(3600, 3600)

    monkeypatch.setattr("batsched.cli.run_cmds.run_automation", timed_out)
    result = runner.invoke(cli, ["run", "-b", str(fe_root), "--devices", "1"])
    assert result.exit_code == 1
    assert "No GPU became available" in result.output


def test_run_passes_options(runner, fe_root, make_window, monkeypatch):
    make_window("lig-a", "rest", "m00")
    seen = {}

    def fake_run(cfg, **kwargs):
        seen["cfg"] = cfg
        seen.update(kwargs)
        raise SchedulerInterrupted("stop")

    monkeypatch.setattr("batsched.cli.run_cmds.run_automation", fake_run)
    runner.invoke(
        cli,
        [
            "run", "-b", str(fe_root), "--phase", "all", "-g", "lig-a", "-g", "lig-b lig-c",
            "--skip-validation", "--skip-permission-fix", "--fresh", "-n", "3", "--poll-interval", "1",
        ],
    )

    assert seen["phase"] == "all"
    assert seen["groups"] == ["lig-a", "lig-b", "lig-c"]
    assert seen["skip_validation"] and seen["skip_permission_fix"] and seen["fresh"]
    assert seen["cfg"].devices.count == 3
    assert seen["cfg"].dispatch.poll_interval_s == 1
    assert seen["cfg"].base_dir == fe_root


def test_groups_rejected_for_dispatch_only(runner, fe_root, make_window, monkeypatch):
    make_window("lig-a", "rest", "m00")
    called = []
    monkeypatch.setattr("batsched.cli.run_cmds.run_automation", lambda cfg, **kw: called.append(kw))

    result = runner.invoke(cli, ["run", "-b", str(fe_root), "--phase", "dispatch", "-g", "lig-a"])

    assert result.exit_code == 2
    assert "cannot be used with --phase dispatch" in result.output
    assert called == []


def test_bad_base_dir_is_reported(runner, tmp_path):
    result = runner.invoke(cli, ["status", "-b", str(tmp_path / "nope")])
    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_status_requires_tracking_dir(runner, fe_root):
    result = runner.invoke(cli, ["status", "-b", str(fe_root)])
    assert result.exit_code == 1
    assert "batsched run" in result.output


def test_status_and_devices(runner, fe_root):
    _seed(fe_root)

    result = runner.invoke(cli, ["status", "-b", str(fe_root)])
    assert result.exit_code == 0, result.output
    assert "Queued: 1  Running: 1  Completed: 1  Failed: 1" in result.output
    assert "Progress: 50.0%" in result.output
    assert "4321" in result.output

    result = runner.invoke(cli, ["devices", "-b", str(fe_root), "-n", "3"])
    assert result.exit_code == 0, result.output
    assert "GPU 0: free" in result.output
    assert "GPU 1: lig-a/rest/m02 (PID 4321" in result.output
    assert "GPU 2: free" in result.output


def test_report(runner, fe_root, tmp_path):
    _seed(fe_root)
    csv = tmp_path / "out.csv"

    result = runner.invoke(cli, ["report", "-b", str(fe_root), "--csv", str(csv)])

    assert result.exit_code == 0, result.output
    assert "INCOMPLETE" in result.output
    assert "Success rate: 50.0%" in result.output
    assert "avg 100.0" in result.output
    assert len(csv.read_text().splitlines()) == 3

    result = runner.invoke(cli, ["report", "-b", str(fe_root), "--failed-only"])
    assert "SUCCESS" not in result.output.split("Execution statistics")[0]


def test_pause_and_resume(runner, fe_root):
    _ledger(fe_root)
    marker = fe_root / ".automation_tracking" / ".paused"

    assert runner.invoke(cli, ["pause", "-b", str(fe_root)]).exit_code == 0
    assert marker.exists()
    assert "PAUSED" in runner.invoke(cli, ["status", "-b", str(fe_root)]).output

    assert runner.invoke(cli, ["resume", "-b", str(fe_root)]).exit_code == 0
    assert not marker.exists()


def test_requeue_failed(runner, fe_root):
    _seed(fe_root)

    result = runner.invoke(cli, ["requeue-failed", "-b", str(fe_root), "--status", "failed"])
    assert "No failed windows" in result.output

    result = runner.invoke(cli, ["requeue-failed", "-b", str(fe_root)])
    assert result.exit_code == 0, result.output
    assert "lig-a/rest/m01" in result.output
    ledger = _ledger(fe_root)
    assert [w.label for w in ledger.queued] == ["lig-a/rest/m03", "lig-a/rest/m01"]
    assert ledger.failed_count == 0


def test_clear_asks_when_jobs_are_active(runner, fe_root):
    _seed(fe_root)

    result = runner.invoke(cli, ["clear", "-b", str(fe_root)], input="n\n")
    assert result.exit_code == 1
    assert _ledger(fe_root).active_count == 1

    result = runner.invoke(cli, ["clear", "-b", str(fe_root), "--keep-terminal", "--yes"])
    assert result.exit_code == 0
    assert _ledger(fe_root).counts() == {"queued": 0, "active": 0, "completed": 1, "failed": 1}


def test_stop_jobs(runner, fe_root, monkeypatch):
    _seed(fe_root)
    stopped = []
    monkeypatch.setattr(
        "batsched.exec.supervisor.ProcessSupervisor.terminate",
        lambda self, job: stopped.append(job.pid) or True,
    )

    result = runner.invoke(cli, ["stop-jobs", "-b", str(fe_root), "--yes"])

    assert result.exit_code == 0, result.output
    assert stopped == [4321]
    assert "Stopped 1 job(s)." in result.output
    assert _ledger(fe_root).active_count == 0
    assert "No active jobs" in runner.invoke(cli, ["stop-jobs", "-b", str(fe_root)]).output
