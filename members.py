from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import parse_object_id
from schemas import STAFF_ROLES


class MemberDirectory:
    """Identity lookups the engine needs: restriction, unpaid penalties, staff list."""

    def __init__(self, database: Database) -> None:
        self.members = database["member"]
        self.penalties = database["penalty"]

    def get(self, user_id: Any) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(user_id)
        if oid is None:
            return None
        return self.members.find_one({"_id": oid})

    def is_restricted(self, user_id: Any) -> bool:
        member = self.get(user_id)
        return bool(member and member.get("is_restricted"))

    def has_unpaid_penalties(self, user_id: Any) -> bool:
        member = self.get(user_id)
        if member and member.get("has_pending_penalties"):
            return True
        return self.penalties.count_documents({"user_id": str(user_id), "is_paid": False}) > 0

    def staff_ids(self) -> List[str]:
        cursor = self.members.find({"role": {"$in": [r.value for r in STAFF_ROLES]}}, {"_id": 1})
        return [str(m["_id"]) for m in cursor]

    @staticmethod
    def display_name(member: Optional[Dict[str, Any]]) -> str:
        if not member:
            return "Unknown Student"
        return member.get("name") or member.get("email") or "Unknown Student"
