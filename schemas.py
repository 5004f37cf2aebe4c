"""
Database Schemas for the Reservation & Inventory Lifecycle Engine

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name:
- Book -> "book"
- Member -> "member"
- Reservation -> "reservation"
- Penalty -> "penalty"
- Notification -> "notification"
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReservationStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    BORROWED = "Borrowed"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    FLAGGED = "Flagged"
    RENEWAL_REQUESTED = "RenewalRequested"
    RETURNED = "Returned"
    DAMAGED = "Damaged"
    LOST = "Lost"


ACTIVE_STATUSES = (
    ReservationStatus.PENDING,
    ReservationStatus.APPROVED,
    ReservationStatus.BORROWED,
    ReservationStatus.RENEWAL_REQUESTED,
)


class PenaltyType(str, Enum):
    OVERDUE = "Overdue"
    DAMAGE = "Damage"
    LOST = "Lost"
    LATE = "Late"


class ReturnCondition(str, Enum):
    GOOD = "Good"
    DAMAGED_MINOR = "Damaged-Minor"
    DAMAGED_MODERATE = "Damaged-Moderate"
    DAMAGED_MAJOR = "Damaged-Major"
    LOST = "Lost"

    @property
    def is_damaged(self) -> bool:
        return self.value.startswith("Damaged-")


class MemberRole(str, Enum):
    STUDENT = "student"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


STAFF_ROLES = (MemberRole.LIBRARIAN, MemberRole.ADMIN)


class NotificationKind(str, Enum):
    RESERVATION_CREATED = "ReservationCreated"
    RESERVATION_APPROVED = "ReservationApproved"
    RESERVATION_REJECTED = "ReservationRejected"
    RESERVATION_CANCELLED = "ReservationCancelled"
    RESERVATION_EXPIRED = "ReservationExpired"
    BOOK_BORROWED = "BookBorrowed"
    BOOK_RETURNED = "BookReturned"
    PICKUP_REMINDER = "PickupReminder"
    RENEWAL_REQUESTED = "RenewalRequested"
    RENEWAL_APPROVED = "RenewalApproved"
    RENEWAL_REJECTED = "RenewalRejected"
    PENALTY_ISSUED = "PenaltyIssued"
    PENALTY_PAID = "PenaltyPaid"
    LIBRARIAN_RESERVATION_ALERT = "LibrarianReservationAlert"
    SUSPICIOUS_ACTIVITY_ALERT = "SuspiciousActivityAlert"


class ErrorCode(str, Enum):
    INVALID_ACCOUNT = "INVALID_ACCOUNT"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ACCOUNT_RESTRICTED = "ACCOUNT_RESTRICTED"
    UNPAID_PENALTIES = "UNPAID_PENALTIES"
    BOOK_NOT_FOUND = "BOOK_NOT_FOUND"
    BOOK_INACTIVE = "BOOK_INACTIVE"
    REFERENCE_ONLY = "REFERENCE_ONLY"
    DUPLICATE_RESERVATION = "DUPLICATE_RESERVATION"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


class Book(BaseModel):
    title: str = Field(..., description="Book title")
    author: Optional[str] = Field(None, description="Author name")
    isbn: Optional[str] = Field(None, description="ISBN identifier")
    total_copies: int = Field(1, ge=0, description="Physical copies ever acquired and not lost")
    available_copies: int = Field(1, ge=0, description="Copies neither held nor borrowed")
    is_active: bool = Field(True, description="Whether the book can be reserved")
    is_reference_only: bool = Field(False, description="Reference-only books never leave the library")


class Member(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    role: MemberRole = Field(MemberRole.STUDENT, description="student, librarian or admin")
    student_number: Optional[str] = Field(None, description="Student number, students only")
    is_restricted: bool = Field(False, description="Restricted accounts cannot reserve")
    has_pending_penalties: bool = Field(False, description="Aggregate unpaid-penalty flag")
    total_pending_penalties: float = Field(0, ge=0, description="Sum of unpaid penalty amounts")
    penalty_restriction_date: Optional[datetime] = None


class Reservation(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str = Field(..., description="Member ObjectId as string")
    book_id: str = Field(..., description="Book ObjectId as string")
    book_title: Optional[str] = None
    status: ReservationStatus = ReservationStatus.PENDING
    reservation_date: datetime = Field(..., description="Creation time, FIFO and abuse-window key")
    approval_date: Optional[datetime] = None
    due_date: Optional[datetime] = Field(None, description="Set only when the copy is picked up")
    borrow_date: Optional[datetime] = None
    return_date: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    borrowed_by: Optional[str] = None
    processed_by: Optional[str] = None
    return_condition: Optional[str] = None
    inventory_hold_active: bool = False
    pickup_reminder_sent: bool = False
    is_suspicious: bool = False
    suspicious_reason: Optional[str] = None
    suspicious_detected_at: Optional[datetime] = None
    notes: Optional[str] = None


class Penalty(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    reservation_id: str
    book_id: str
    book_title: Optional[str] = None
    penalty_type: PenaltyType
    amount: float = Field(..., ge=0)
    description: str = ""
    is_paid: bool = False
    payment_date: Optional[datetime] = None
    created_by: Optional[str] = None


class Notification(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    kind: NotificationKind
    title: str
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False


class ReservationResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    success: bool
    message: str
    error_code: Optional[ErrorCode] = None
    reservation_id: Optional[str] = None


class RenewalCheck(BaseModel):
    is_valid: bool
    message: str
    reason: str
