"""
Inventory ledger: the only code that mutates a book's copy counters.

Every primitive is a single conditional update against the book document
(filter-then-update in one round trip). ``try_decrement_available`` is the
engine's only compare-and-swap and the sole guard against overselling.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from pymongo.database import Database

from database import parse_object_id

logger = logging.getLogger(__name__)


class InventoryConsistencyError(RuntimeError):
    """A compensating ledger update failed; a copy is unaccounted for."""


class InventoryLedger:
    def __init__(self, database: Database) -> None:
        self.books = database["book"]

    def _id_filter(self, book_id: Any) -> Optional[dict]:
        oid = parse_object_id(book_id)
        if oid is None:
            return None
        return {"_id": oid}

    def try_decrement_available(self, book_id: Any) -> bool:
        """Take one available copy. False when none is left at write time."""
        filt = self._id_filter(book_id)
        if filt is None:
            return False
        filt["available_copies"] = {"$gt": 0}
        result = self.books.update_one(
            filt,
            {"$inc": {"available_copies": -1}, "$set": {"updated_at": datetime.utcnow()}},
        )
        return result.modified_count == 1

    def increment_available(self, book_id: Any) -> bool:
        filt = self._id_filter(book_id)
        if filt is None:
            return False
        result = self.books.update_one(
            filt,
            {"$inc": {"available_copies": 1}, "$set": {"updated_at": datetime.utcnow()}},
        )
        return result.modified_count == 1

    def decrement_total(self, book_id: Any) -> bool:
        """Permanently remove one copy (lost book)."""
        filt = self._id_filter(book_id)
        if filt is None:
            return False
        filt["total_copies"] = {"$gt": 0}
        result = self.books.update_one(
            filt,
            {"$inc": {"total_copies": -1}, "$set": {"updated_at": datetime.utcnow()}},
        )
        return result.modified_count == 1

    def add_copies(self, book_id: Any, count: int) -> bool:
        if count <= 0:
            return False
        filt = self._id_filter(book_id)
        if filt is None:
            return False
        result = self.books.update_one(
            filt,
            {"$inc": {"total_copies": count, "available_copies": count},
             "$set": {"updated_at": datetime.utcnow()}},
        )
        return result.modified_count == 1

    def compensate_decrement(self, book_id: Any, context: str) -> None:
        """Give back a copy taken by try_decrement_available whose owning transition failed."""
        try:
            restored = self.increment_available(book_id)
        except Exception as exc:
            logger.critical("Ledger rollback raised for book %s (%s): %s", book_id, context, exc)
            raise InventoryConsistencyError(
                f"Could not restore available copy for book {book_id} ({context})"
            ) from exc
        if not restored:
            logger.critical("Ledger rollback matched no book %s (%s)", book_id, context)
            raise InventoryConsistencyError(
                f"Could not restore available copy for book {book_id} ({context})"
            )
        logger.warning("Rolled back held copy for book %s (%s)", book_id, context)
