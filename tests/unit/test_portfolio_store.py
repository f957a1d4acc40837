"""Unit tests for PortfolioStore."""

import struct
import threading
from pathlib import Path

import pytest

from src.portfolio.store import (
    PortfolioStore,
    decode_percent,
    encode_percent,
    finished_key,
    portfolio_prefix,
)
from src.utils.exceptions import (
    AlreadyFinishedError,
    InvalidAllocationError,
    StorageError,
)


class TestPortfolioStore:
    """Test cases for PortfolioStore."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        store = PortfolioStore("")
        yield store
        store.close()

    def test_empty_user(self, store: PortfolioStore) -> None:
        """Test an unknown user has an empty, unfinished allocation."""
        assert store.get_allocation(42) == {}
        assert store.is_finished(42) is False

    def test_add_and_get(self, store: PortfolioStore) -> None:
        """Test added entries are returned."""
        store.add_entries(42, {"FXMM": 30.0, "SBER": 70.0})

        assert store.get_allocation(42) == {"FXMM": 30.0, "SBER": 70.0}

    def test_add_overwrites_existing_secid(self, store: PortfolioStore) -> None:
        """Test re-adding a secid replaces its percent."""
        store.add_entries(42, {"FXMM": 30.0})
        store.add_entries(42, {"FXMM": 45.5})

        assert store.get_allocation(42) == {"FXMM": 45.5}

    def test_finish_once(self, store: PortfolioStore) -> None:
        """Test finish sets the flag and refuses to run twice."""
        store.add_entries(42, {"FXMM": 100.0})
        store.finish(42)

        assert store.is_finished(42) is True
        with pytest.raises(AlreadyFinishedError) as exc_info:
            store.finish(42)
        assert exc_info.value.user_id == 42

    def test_add_after_finish_rejected(self, store: PortfolioStore) -> None:
        """Test a finished allocation cannot be edited."""
        store.add_entries(42, {"FXMM": 100.0})
        store.finish(42)

        with pytest.raises(AlreadyFinishedError):
            store.add_entries(42, {"SBER": 10.0})
        assert store.get_allocation(42) == {"FXMM": 100.0}

    def test_clear_data_returns_snapshot_and_resets(self, store: PortfolioStore) -> None:
        """Test clearing returns the previous allocation and the flag is gone."""
        store.add_entries(42, {"FXMM": 30.0, "SBER": 70.0})
        store.finish(42)

        snapshot = store.clear_data(42)

        assert snapshot == {"FXMM": 30.0, "SBER": 70.0}
        assert store.get_allocation(42) == {}
        assert store.is_finished(42) is False
        store.add_entries(42, {"AFKS": 10.0})
        assert store.get_allocation(42) == {"AFKS": 10.0}

    def test_clear_empty_user(self, store: PortfolioStore) -> None:
        """Test clearing a user with no data is harmless."""
        assert store.clear_data(7) == {}

    def test_users_are_isolated(self, store: PortfolioStore) -> None:
        """Test a user id that prefixes another does not leak entries."""
        store.add_entries(1, {"FXMM": 10.0})
        store.add_entries(11, {"SBER": 20.0})
        store.finish(11)

        assert store.get_allocation(1) == {"FXMM": 10.0}
        assert store.get_allocation(11) == {"SBER": 20.0}
        assert store.is_finished(1) is False

        store.clear_data(1)
        assert store.get_allocation(11) == {"SBER": 20.0}
        assert store.is_finished(11) is True

    def test_key_layout(self, store: PortfolioStore) -> None:
        """Test the raw keys and 8-byte little-endian values."""
        store.add_entries(42, {"FXMM": 30.0})
        store.finish(42)

        with store.kv.transaction() as txn:
            assert txn.get("42_portfolioFXMM") == struct.pack("<d", 30.0)
            assert txn.get("42_finished") == b""

        assert portfolio_prefix(42) == "42_portfolio"
        assert finished_key(42) == "42_finished"

    def test_validator_rejection_leaves_state_unchanged(self, store: PortfolioStore) -> None:
        """Test a validator error aborts the whole write."""
        store.add_entries(42, {"FXMM": 30.0})

        def reject(current, updates):
            assert current == {"FXMM": 30.0}
            assert updates == {"SBER": 80.0, "AFKS": 5.0}
            raise InvalidAllocationError("too much")

        with pytest.raises(InvalidAllocationError):
            store.add_entries(42, {"SBER": 80.0, "AFKS": 5.0}, validator=reject)

        assert store.get_allocation(42) == {"FXMM": 30.0}

    def test_corrupt_value_raises_storage_error(self, store: PortfolioStore) -> None:
        """Test a value that is not 8 bytes is reported."""
        with store.kv.transaction(write=True) as txn:
            txn.set("42_portfolioFXMM", b"\x00\x01")

        with pytest.raises(StorageError, match="8 bytes"):
            store.get_allocation(42)

    def test_context_manager_closes(self) -> None:
        """Test the store closes its connections on exit."""
        with PortfolioStore("") as store:
            store.add_entries(1, {"FXMM": 1.0})

        assert store.kv._shared_connection is None

    def test_persists_across_reopen(self, tmp_path: Path) -> None:
        """Test file-backed data survives closing the store."""
        path = str(tmp_path / "portfolios.db")
        with PortfolioStore(path) as store:
            store.add_entries("alice", {"FXMM": 40.0, "SBER": 60.0})
            store.finish("alice")

        with PortfolioStore(path) as store:
            assert store.get_allocation("alice") == {"FXMM": 40.0, "SBER": 60.0}
            assert store.is_finished("alice") is True

    def test_concurrent_users(self, tmp_path: Path) -> None:
        """Test writers for different users from many threads."""
        store = PortfolioStore(str(tmp_path / "portfolios.db"))
        errors = []

        def worker(user_id: int) -> None:
            try:
                for i in range(10):
                    store.add_entries(user_id, {f"SEC{i}": float(i)})
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(uid,)) for uid in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        try:
            assert errors == []
            for uid in range(8):
                assert len(store.get_allocation(uid)) == 10
        finally:
            store.close()


class TestPercentCodec:
    """Test cases for the percent value codec."""

    def test_encoding_is_little_endian_float64(self) -> None:
        assert encode_percent(30.0) == b"\x00\x00\x00\x00\x00\x00>@"

    def test_decode(self) -> None:
        assert decode_percent(struct.pack("<d", 12.5)) == 12.5

    def test_decode_wrong_length(self) -> None:
        with pytest.raises(StorageError):
            decode_percent(b"")
