import os
import shutil
import stat
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import pytest
from loguru import logger

from batsched.utils.logging import reset_logging

PROCESS_ENV = "BATSCHED_TEST_PROCESSES"

REQUIRED_FILES = ("full.hmr.prmtop", "full.inpcrd", "mdin-00", "mdin-01", "mdin-02")


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "processes: launches real bash jobs (needs bash; disable with BATSCHED_TEST_PROCESSES=0)",
    )


def pytest_collection_modifyitems(config, items):
    enabled = os.environ.get(PROCESS_ENV, "1") != "0" and shutil.which("bash") is not None
    for item in items:
        if "processes" in item.keywords and not enabled:
            item.add_marker(
                pytest.mark.skip(reason="bash unavailable or BATSCHED_TEST_PROCESSES=0")
            )


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _no_host_gpus(monkeypatch):
    """Keep the host's GPU selection out of detection and job environments."""
    monkeypatch.delenv("CUDA_VISIBLE_DEVICES", raising=False)


@pytest.fixture()
def log_messages() -> List[str]:
    """Collect every loguru message emitted during the test."""
    messages: List[str] = []
    sink_id = logger.add(lambda msg: messages.append(msg.record["message"]), level="DEBUG")
    yield messages
    try:
        logger.remove(sink_id)
    except ValueError:
        pass


@pytest.fixture()
def fe_root(tmp_path: Path) -> Path:
    root = tmp_path / "fe"
    root.mkdir()
    return root


WindowFactory = Callable[..., Path]


@pytest.fixture()
def make_window(fe_root: Path) -> WindowFactory:
    """
    Create ``fe/<group>/<category>/<name>`` with the files a runnable window needs.

    ``script`` is the body of ``run-local.bash`` (``None`` omits the script);
    ``skip`` lists required files to leave out.
    """

    def _make(
        group: str,
        category: str,
        name: str,
        *,
        script: Optional[str] = "exit 0\n",
        skip: Iterable[str] = (),
        executable: bool = True,
    ) -> Path:
        win = fe_root / group / category / name
        win.mkdir(parents=True, exist_ok=True)
        for fname in REQUIRED_FILES:
            if fname not in skip:
                (win / fname).write_text("stub\n")
        if script is not None:
            entry = win / "run-local.bash"
            entry.write_text("#!/bin/bash\n" + script)
            mode = entry.stat().st_mode
            if executable:
                entry.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            else:
                entry.chmod(mode & ~(stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
        return win

    return _make
