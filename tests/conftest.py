"""Shared pytest fixtures."""

import copy
import json
from pathlib import Path

import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture(scope="session")
def _moex_payload_raw() -> dict:
    with open(FIXTURES_DIR / "moex_securities.json", encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def moex_payload(_moex_payload_raw: dict) -> dict:
    """ISS securities response for stock/shares/TQBR (fresh copy per test)."""
    return copy.deepcopy(_moex_payload_raw)
