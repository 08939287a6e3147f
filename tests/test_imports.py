"""Tests that every module imports on its own in a fresh interpreter."""

import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parent.parent / "src"

MODULES = [
    "attachsync.client.api",
    "attachsync.client.media",
    "attachsync.client.storage",
    "attachsync.client.store",
    "attachsync.client.sync",
    "attachsync.client.sync.attachment_queue",
    "attachsync.client.sync.connector",
    "attachsync.client.sync.oplog",
    "attachsync.client.sync.service",
    "attachsync.client.sync.types",
    "attachsync.client.sync.workers",
    "attachsync.client.sync.workers.upload_worker",
    "attachsync.client.cli",
]


@pytest.mark.parametrize("module", MODULES)
def test_module_imports_first(module: str) -> None:
    """Importing a module before anything else must not hit an import cycle."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))

    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
        env=env,
        timeout=60,
    )

    assert result.returncode == 0, result.stderr
