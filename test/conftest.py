"""Test configuration to ensure repo modules are importable."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolate_worker_environment(monkeypatch):
    """Keep ``DCA_*`` settings and cached stores from leaking between tests."""

    from dca_worker import store

    for key in list(os.environ):
        if key.startswith("DCA_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(store, "_STORE_SINGLETON", {})
    yield
