import os
import pathlib
import subprocess
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]


# conftest already imports most of the package, so each entry point is loaded
# in a fresh interpreter where module order is the one users hit.
@pytest.mark.parametrize(
    "module",
    [
        "inbox.main",
        "inbox.assistant",
        "inbox.conversations.repository",
        "inbox.automations",
        "inbox.automations.engine",
        "inbox.templates",
        "inbox.engine",
    ],
)
def test_entry_modules_import_cleanly(module, tmp_path):
    proc = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        cwd=ROOT,
        capture_output=True,
        text=True,
        env={**os.environ, "LOG_DIR": str(tmp_path)},
        timeout=60,
    )
    assert proc.returncode == 0, proc.stderr
