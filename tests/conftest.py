"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure copybot is importable without an install
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


@pytest.fixture(autouse=True)
def _no_live_env(monkeypatch):
    """Tests never see the operator's live-trading environment."""
    for name in ("ENABLE_LIVE_TRADING", "PRIVATE_KEY", "USER_ADDRESSES", "PROXY_WALLET", "WALLET_TYPE"):
        monkeypatch.delenv(name, raising=False)
