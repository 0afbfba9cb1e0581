import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from core.logger import set_logs_dir  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_journal(tmp_path):
    """Point the JSONL journal at a per-test directory."""
    logs_dir = tmp_path / "logs"
    set_logs_dir(logs_dir)
    yield logs_dir
    set_logs_dir(None)
