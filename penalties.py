import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, parse_object_id
from notifications import Notifier
from schemas import NotificationKind, Penalty, PenaltyType

logger = logging.getLogger(__name__)


def format_amount(amount: float) -> str:
    return f"{amount:,.2f}"


class PenaltyService:
    def __init__(self, database: Database, notifier: Notifier) -> None:
        self.database = database
        self.penalties = database["penalty"]
        self.members = database["member"]
        self.notifier = notifier

    def issue(self, reservation: Dict[str, Any], penalty_type: PenaltyType, amount: float,
              description: str, created_by: Optional[str] = None) -> str:
        """Insert a one-off penalty (Damage, Lost, Late) and tell the student."""
        penalty = Penalty(
            user_id=reservation["user_id"],
            reservation_id=str(reservation["_id"]),
            book_id=reservation["book_id"],
            book_title=reservation.get("book_title"),
            penalty_type=penalty_type,
            amount=amount,
            description=description,
            created_by=created_by,
        )
        penalty_id = create_document("penalty", penalty, database=self.database)
        logger.info("Issued %s penalty %s of %s for reservation %s",
                    penalty_type.value, penalty_id, format_amount(amount), reservation["_id"])
        self.notifier.notify(reservation["user_id"], NotificationKind.PENALTY_ISSUED, {
            "book_title": reservation.get("book_title"),
            "penalty_type": penalty_type.value,
            "amount": format_amount(amount),
        })
        return penalty_id

    def upsert_overdue(self, reservation: Dict[str, Any], minutes_overdue: int, amount: float,
                       now: Optional[datetime] = None) -> Tuple[float, bool]:
        """Write the freshly computed overdue amount; returns (amount, created)."""
        now = now or datetime.utcnow()
        reservation_id = str(reservation["_id"])
        description = f"{minutes_overdue} min(s) = {format_amount(amount)}"
        result = self.penalties.update_one(
            {"reservation_id": reservation_id, "penalty_type": PenaltyType.OVERDUE.value},
            {
                "$set": {"amount": amount, "description": description, "updated_at": now},
                "$setOnInsert": {
                    "user_id": reservation["user_id"],
                    "book_id": reservation["book_id"],
                    "book_title": reservation.get("book_title"),
                    "is_paid": False,
                    "payment_date": None,
                    "created_by": None,
                    "created_at": now,
                },
            },
            upsert=True,
        )
        created = result.upserted_id is not None
        if created:
            logger.info("Created overdue penalty for reservation %s: %s", reservation_id, format_amount(amount))
            self.notifier.notify(reservation["user_id"], NotificationKind.PENALTY_ISSUED, {
                "book_title": reservation.get("book_title"),
                "penalty_type": PenaltyType.OVERDUE.value,
                "amount": format_amount(amount),
            })
        else:
            logger.debug("Updated overdue penalty for reservation %s: %s", reservation_id, format_amount(amount))
        return amount, created

    def overdue_for(self, reservation_id: Any) -> Optional[Dict[str, Any]]:
        return self.penalties.find_one(
            {"reservation_id": str(reservation_id), "penalty_type": PenaltyType.OVERDUE.value}
        )

    def for_user(self, user_id: Any) -> List[Dict[str, Any]]:
        return list(self.penalties.find({"user_id": str(user_id)}).sort("created_at", DESCENDING))

    def unpaid_of_types(self, user_id: Any, types: Iterable[PenaltyType]) -> List[Dict[str, Any]]:
        return list(self.penalties.find({
            "user_id": str(user_id),
            "is_paid": False,
            "penalty_type": {"$in": [t.value for t in types]},
        }))

    def total_pending(self, user_id: Any) -> float:
        unpaid = self.penalties.find({"user_id": str(user_id), "is_paid": False}, {"amount": 1})
        return float(sum(p.get("amount", 0) for p in unpaid))

    def refresh_member_status(self, user_id: Any, now: Optional[datetime] = None) -> bool:
        """Recompute the member's pending-penalty flag and total."""
        oid = parse_object_id(user_id)
        if oid is None:
            return False
        total = self.total_pending(user_id)
        has_pending = total > 0
        result = self.members.update_one({"_id": oid}, {"$set": {
            "has_pending_penalties": has_pending,
            "total_pending_penalties": total,
            "penalty_restriction_date": (now or datetime.utcnow()) if has_pending else None,
        }})
        return result.matched_count == 1

    def mark_paid(self, penalty_id: Any, now: Optional[datetime] = None) -> bool:
        oid = parse_object_id(penalty_id)
        if oid is None:
            return False
        now = now or datetime.utcnow()
        penalty = self.penalties.find_one_and_update(
            {"_id": oid, "is_paid": False},
            {"$set": {"is_paid": True, "payment_date": now, "updated_at": now}},
        )
        if penalty is None:
            return False
        self.refresh_member_status(penalty["user_id"], now)
        self.notifier.notify(penalty["user_id"], NotificationKind.PENALTY_PAID, {
            "book_title": penalty.get("book_title"),
            "amount": format_amount(penalty.get("amount", 0)),
        })
        return True
