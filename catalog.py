from typing import Any, Dict, Optional

from pymongo.database import Database

from database import parse_object_id


class Catalog:
    """Read-only view of the book collection."""

    def __init__(self, database: Database) -> None:
        self.books = database["book"]

    def resolve(self, identifier: Any) -> Optional[Dict[str, Any]]:
        """Find a book by ObjectId first, then by ISBN."""
        if identifier is None:
            return None
        oid = parse_object_id(identifier)
        if oid is not None:
            book = self.books.find_one({"_id": oid})
            if book:
                return book
        return self.books.find_one({"isbn": str(identifier)})

    @staticmethod
    def is_reservable(book: Dict[str, Any]) -> bool:
        return bool(book.get("is_active", True)) and not book.get("is_reference_only", False)
