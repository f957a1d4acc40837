"""Durable per-user allocation store.

Every key of a user lives under a per-user prefix, so a prefix scan
enumerates exactly one user's entries:

    "<user_id>_portfolio<secid>"  -> 8-byte little-endian float64 percent
    "<user_id>_finished"          -> empty value; presence means finished

State machine per user:

    Empty --add_entries--> Accumulating --add_entries (sum=100)--> Complete
    Complete --finish--> Finished
    any state --clear_data--> Empty
    add_entries/finish on Finished -> AlreadyFinishedError

The store does not enforce the 100% ceiling itself. Callers either validate
against a fresh get_allocation() read before writing, which leaves a window
where two concurrent writers for the same user can both pass the check, or
pass a ``validator`` to add_entries, which runs inside the write transaction
and closes that window.

Users never share keys, but the store shares one SQLite writer lock, so
writes for different users still queue behind each other for the length of
one short transaction.
"""

import struct
from typing import Callable, Dict, Hashable, Mapping, Optional

from src.data.storage.database import KeyValueStore, Transaction
from src.utils.exceptions import AlreadyFinishedError, StorageError
from src.utils.logging import get_logger

logger = get_logger(__name__)

PORTFOLIO_INFIX = "_portfolio"
FINISHED_SUFFIX = "_finished"

Allocation = Dict[str, float]
AllocationValidator = Callable[[Allocation, Allocation], None]


def portfolio_prefix(user_id: Hashable) -> str:
    return f"{user_id}{PORTFOLIO_INFIX}"


def finished_key(user_id: Hashable) -> str:
    return f"{user_id}{FINISHED_SUFFIX}"


def encode_percent(percent: float) -> bytes:
    """Encode a percentage as 8-byte little-endian IEEE-754 float64."""
    return struct.pack("<d", float(percent))


def decode_percent(raw: bytes) -> float:
    if len(raw) != 8:
        raise StorageError(f"Corrupt percentage value: expected 8 bytes, got {len(raw)}")
    return struct.unpack("<d", raw)[0]


class PortfolioStore:
    """Per-user allocation CRUD with a one-way finished flag.

    User ids are opaque; they only need a stable string form.

    Example:
        >>> store = PortfolioStore("data/portfolios.db")
        >>> store.add_entries(42, {"FXMM": 30.0, "SBER": 70.0})
        >>> store.finish(42)
        >>> store.get_allocation(42)
        {'FXMM': 30.0, 'SBER': 70.0}
    """

    def __init__(self, path: Optional[str] = None, kv: Optional[KeyValueStore] = None):
        """Initialize portfolio store.

        Args:
            path: SQLite file path; None or "" keeps data in memory
            kv: Existing KeyValueStore to use instead of opening path
        """
        self.kv = kv or KeyValueStore(path)

    def add_entries(
        self,
        user_id: Hashable,
        entries: Mapping[str, float],
        validator: Optional[AllocationValidator] = None,
    ) -> None:
        """Upsert percentages for a user in one transaction.

        Args:
            user_id: Opaque user identifier
            entries: Mapping of secid to percent; existing secids are
                overwritten, not summed
            validator: Optional callable(current, updates) run inside the
                transaction before writing; raising aborts the write

        Raises:
            AlreadyFinishedError: If the user has finished their portfolio
            StorageError: If the write fails
        """
        updates = {secid: float(percent) for secid, percent in entries.items()}

        with self.kv.transaction(write=True) as txn:
            if self._is_finished(txn, user_id):
                raise AlreadyFinishedError(user_id)

            if validator is not None:
                validator(self._scan_allocation(txn, user_id), dict(updates))

            prefix = portfolio_prefix(user_id)
            for secid, percent in updates.items():
                txn.set(prefix + secid, encode_percent(percent))

        logger.debug("Stored %d entries for user %s", len(updates), user_id)

    def get_allocation(self, user_id: Hashable) -> Allocation:
        """Return a snapshot of the user's allocation (unordered)."""
        with self.kv.transaction() as txn:
            return self._scan_allocation(txn, user_id)

    def is_finished(self, user_id: Hashable) -> bool:
        with self.kv.transaction() as txn:
            return self._is_finished(txn, user_id)

    def finish(self, user_id: Hashable) -> None:
        """Mark the user's allocation as finished.

        Raises:
            AlreadyFinishedError: If it is already finished
        """
        with self.kv.transaction(write=True) as txn:
            if self._is_finished(txn, user_id):
                raise AlreadyFinishedError(user_id)
            txn.set(finished_key(user_id), b"")

        logger.info("User %s finished their portfolio", user_id)

    def clear_data(self, user_id: Hashable) -> Allocation:
        """Delete every entry and the finished flag of a user.

        Returns:
            The allocation as it was right before clearing, so it can be
            shown back to the user for undo.
        """
        with self.kv.transaction(write=True) as txn:
            snapshot = self._scan_allocation(txn, user_id)
            txn.delete_prefix(portfolio_prefix(user_id))
            txn.delete(finished_key(user_id))

        logger.info("Cleared %d entries for user %s", len(snapshot), user_id)
        return snapshot

    def close(self) -> None:
        self.kv.close()

    def __enter__(self) -> "PortfolioStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @staticmethod
    def _is_finished(txn: Transaction, user_id: Hashable) -> bool:
        return txn.exists(finished_key(user_id))

    @staticmethod
    def _scan_allocation(txn: Transaction, user_id: Hashable) -> Allocation:
        prefix = portfolio_prefix(user_id)
        return {
            key[len(prefix):]: decode_percent(value)
            for key, value in txn.scan_prefix(prefix)
        }
