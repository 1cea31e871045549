from __future__ import annotations

import os
from pathlib import Path

import pytest

from glpinotifier.config import _ENV_KEYS


@pytest.fixture(autouse=True)
def _isolate_runtime_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep state, heartbeat and logs in temp and ignore the developer's GLPI env."""
    data_dir = tmp_path / "data"
    root_dir = tmp_path / "Root"
    work_dir = tmp_path / "work"
    for path in (data_dir, root_dir, work_dir):
        path.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("GLPINOTIFIER_DATA_DIR", str(data_dir))
    monkeypatch.setenv("GLPINOTIFIER_ROOT", str(root_dir))
    monkeypatch.delenv("GLPINOTIFIER_CONFIG", raising=False)
    for key in _ENV_KEYS:
        if key in os.environ:
            monkeypatch.delenv(key)
    monkeypatch.chdir(work_dir)
