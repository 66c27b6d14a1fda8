from __future__ import annotations

import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from batsched.config import OutcomeSettings, WindowLayout
from batsched.errors import LaunchError
from batsched.exec import EnvironmentSnapshot, PidHandle, ProcessSupervisor, classify_window
from batsched.ledger import ActiveJob, TerminalStatus
from batsched.windows import WindowDescriptor

SUCCESS_SCRIPT = 'sleep 0.3\necho "| Final Performance Info:" > md-02.out\n'


def _supervisor(environ=None, **kwargs) -> ProcessSupervisor:
    if environ is None:
        environ = dict(os.environ, PATH=os.environ.get("PATH", ""))
    env = EnvironmentSnapshot.capture(environ=environ)
    kwargs.setdefault("start_grace_s", 0.0)
    return ProcessSupervisor(WindowLayout(), OutcomeSettings(), env, **kwargs)


def _wait_outcome(sup: ProcessSupervisor, job: ActiveJob, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = sup.poll_outcome(job)
        if status is not None:
            return status
        time.sleep(0.05)
    pytest.fail(f"{job.window.label} did not finish within {timeout}s")


def test_classify_window(tmp_path):
    outcome = OutcomeSettings()
    assert classify_window(tmp_path, outcome) is TerminalStatus.FAILED

    (tmp_path / "md-02.out").write_text("NSTEP = 1000\n")
    assert classify_window(tmp_path, outcome) is TerminalStatus.INCOMPLETE

    (tmp_path / "md-02.out").write_text("NSTEP = 1000\n|  Final Performance Info:\n")
    assert classify_window(tmp_path, outcome) is TerminalStatus.SUCCESS


def test_environment_snapshot_pins_one_device():
    snap = EnvironmentSnapshot.capture(environ={"PATH": "/opt/amber/bin", "HOME": "/h"})
    env = snap.for_device(2)
    assert env["CUDA_VISIBLE_DEVICES"] == "2"
    assert env["PATH"] == "/opt/amber/bin"
    assert env["LD_LIBRARY_PATH"] == ""
    assert env["HOME"] == "/h"


def test_clean_outputs_keeps_inputs(make_window):
    win = make_window("lig-a", "rest", "m00")
    for name in ("md-01.out", "md-02.rst7", "md00.nc", "mdinfo", "run.log"):
        (win / name).write_text("old")

    removed = _supervisor().clean_outputs(win)

    assert sorted(p.name for p in removed) == ["md-01.out", "md-02.rst7", "md00.nc", "mdinfo", "run.log"]
    assert (win / "mdin-02").exists()
    assert (win / "full.inpcrd").exists()


def test_ensure_executable_fixes_mode_once(make_window):
    win = make_window("lig-a", "rest", "m00", executable=False)
    script = _supervisor().ensure_executable(WindowDescriptor.from_path(win))
    assert os.access(script, os.X_OK)


def test_unremovable_outputs_are_a_launch_error(make_window, monkeypatch):
    win = make_window("lig-a", "rest", "m00")
    (win / "md-02.out").write_text("old")

    def locked(self, missing_ok=False):
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "unlink", locked)
    with pytest.raises(LaunchError, match="cannot remove previous outputs"):
        _supervisor().launch(WindowDescriptor.from_path(win), 0)


def test_device_beyond_listed_ids_is_a_launch_error(make_window):
    win = make_window("lig-a", "rest", "m00")
    sup = _supervisor(environ={"PATH": "/usr/bin", "CUDA_VISIBLE_DEVICES": "4"})
    with pytest.raises(LaunchError, match="outside CUDA_VISIBLE_DEVICES=4"):
        sup.launch(WindowDescriptor.from_path(win), 1)


def test_launch_errors_for_missing_pieces(tmp_path, make_window):
    sup = _supervisor()
    with pytest.raises(LaunchError, match="window directory not found"):
        sup.launch(WindowDescriptor.from_path(tmp_path / "lig-a" / "rest" / "m09"), 0)

    win = make_window("lig-a", "rest", "m00", script=None)
    with pytest.raises(LaunchError, match="run-local.bash not found"):
        sup.launch(WindowDescriptor.from_path(win), 0)


@pytest.mark.processes
def test_launch_success_and_environment(make_window):
    win = make_window(
        "lig-a",
        "rest",
        "m00",
        script='echo "$CUDA_VISIBLE_DEVICES" > gpu.txt\necho started\n' + SUCCESS_SCRIPT,
    )
    (win / "md-02.out").write_text("Final Performance from a previous attempt\n")
    sup = _supervisor()
    entry = WindowDescriptor.from_path(win)

    job = sup.launch(entry, 3)

    assert job.device == 3
    assert job.window == entry
    assert sup.poll_outcome(job) is None
    assert _wait_outcome(sup, job) is TerminalStatus.SUCCESS
    assert (win / "gpu.txt").read_text().strip() == "3"
    assert "started" in (win / "run.log").read_text()


@pytest.mark.processes
def test_job_sees_the_listed_gpu_id(make_window):
    win = make_window(
        "lig-a", "rest", "m00", script='echo "$CUDA_VISIBLE_DEVICES" > gpu.txt\n' + SUCCESS_SCRIPT
    )
    sup = _supervisor(environ=dict(os.environ, CUDA_VISIBLE_DEVICES="2,3"))
    job = sup.launch(WindowDescriptor.from_path(win), 1)

    assert job.device == 1
    assert _wait_outcome(sup, job) is TerminalStatus.SUCCESS
    assert (win / "gpu.txt").read_text().strip() == "3"


@pytest.mark.processes
def test_finished_without_marker_is_incomplete(make_window):
    win = make_window("lig-a", "rest", "m00", script="sleep 0.3\necho partial > md-02.out\nexit 0\n")
    sup = _supervisor()
    job = sup.launch(WindowDescriptor.from_path(win), 0)
    assert _wait_outcome(sup, job) is TerminalStatus.INCOMPLETE


@pytest.mark.processes
def test_crash_without_output_is_failed(make_window):
    win = make_window("lig-a", "rest", "m00", script="sleep 0.3\nexit 3\n")
    sup = _supervisor()
    job = sup.launch(WindowDescriptor.from_path(win), 0)
    assert _wait_outcome(sup, job) is TerminalStatus.FAILED


@pytest.mark.processes
def test_exit_during_grace_is_launch_error(make_window):
    win = make_window("lig-a", "rest", "m00", script="exit 1\n")
    sup = _supervisor(start_grace_s=0.5)
    with pytest.raises(LaunchError, match="exited during start-up"):
        sup.launch(WindowDescriptor.from_path(win), 0)


@pytest.mark.processes
def test_terminate_running_job(make_window):
    win = make_window("lig-a", "rest", "m00", script="exec sleep 30\n")
    sup = _supervisor()
    job = sup.launch(WindowDescriptor.from_path(win), 0)

    assert sup.terminate(job) is True
    assert _wait_outcome(sup, job) is TerminalStatus.FAILED
    assert sup.terminate(job) is False


def test_pid_handle_probes_foreign_processes():
    assert PidHandle(os.getpid()).is_alive()

    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    assert not PidHandle(proc.pid).is_alive()


@pytest.mark.processes
def test_restored_job_is_polled_by_pid(make_window):
    win = make_window("lig-a", "rest", "m00", script="exec sleep 30\n")
    first = _supervisor()
    job = first.launch(WindowDescriptor.from_path(win), 1)

    # a new supervisor only knows the persisted record
    restored = _supervisor()
    assert restored.poll_outcome(job) is None
    first.terminate(job)
    assert _wait_outcome(first, job) is TerminalStatus.FAILED
    assert _wait_outcome(restored, job) is TerminalStatus.FAILED
