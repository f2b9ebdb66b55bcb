"""Test configuration for pytest."""
from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from ruff_ai_fix import fixer


@pytest.fixture(autouse=True)
def change_to_tmp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, Any, None]:
    """Change to temporary directory for each test."""
    original_dir = os.getcwd()
    monkeypatch.chdir(tmp_path)
    yield
    os.chdir(original_dir)


@pytest.fixture(autouse=True)
def fresh_logger(monkeypatch: pytest.MonkeyPatch) -> None:
    """Give every test a default logger; main() replaces the global one."""
    monkeypatch.setattr(fixer, 'logger', fixer.Logger())
    for name in ('RUFF_AI_FIX_MODEL', 'RUFF_AI_FIX_API_BASE', 'RUFF_AI_FIX_MAX_WORKERS'):
        monkeypatch.delenv(name, raising=False)
