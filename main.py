import logging
import os
import threading
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date, datetime
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config import settings
from database import create_document, db, ensure_indexes
from engine import ReservationEngine
from schemas import Book as BookSchema, ErrorCode, Member as MemberSchema, MemberRole, ReturnCondition
from sweeps import PeriodicSweep

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_engine: Optional[ReservationEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> ReservationEngine:
    global _engine
    if _engine is None:
        if db is None:
            raise HTTPException(status_code=503, detail="Database not available")
        with _engine_lock:
            if _engine is None:
                ensure_indexes(db)
                _engine = ReservationEngine(db, settings)
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    tickers: List[PeriodicSweep] = []
    if settings.enable_sweeps and db is not None:
        engine = get_engine()
        tickers = [
            PeriodicSweep("expiry-sweep", engine.run_expiry_sweep, settings.expiry_sweep_interval_seconds),
            PeriodicSweep("overdue-sweep", engine.run_overdue_accrual_sweep, settings.overdue_sweep_interval_seconds),
        ]
        for ticker in tickers:
            ticker.start()
    else:
        logger.info("Background sweeps disabled")
    yield
    for ticker in tickers:
        ticker.stop(timeout=5)


app = FastAPI(title="Library Reservation API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Utility helpers
# ----------------------

def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid ID format")

def serialize(doc: dict) -> dict:
    if not doc:
        return doc
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    # Convert datetime/date to isoformat for JSON
    for k, v in list(d.items()):
        if isinstance(v, (datetime, date)):
            d[k] = v.isoformat()
    return d

def require_reservation(engine: ReservationEngine, reservation_id: str) -> dict:
    doc = engine.reservations.get(to_object_id(reservation_id))
    if not doc:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return doc

def applied(engine: ReservationEngine, reservation_id: str, ok: bool, action: str) -> dict:
    if not ok:
        raise HTTPException(status_code=409, detail=f"Could not {action} this reservation in its current state")
    return serialize(engine.reservations.get(reservation_id))

# ----------------------
# Health
# ----------------------

@app.get("/")
def read_root():
    return {"message": "Library Reservation Backend is running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    if db is not None:
        response["database"] = "✅ Available"
        response["database_name"] = getattr(db, "name", "✅ Connected")
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    else:
        response["database"] = "⚠️ Available but not initialized"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response

# ----------------------
# Pydantic request models
# ----------------------

class CreateBook(BaseModel):
    title: str
    author: Optional[str] = None
    isbn: Optional[str] = None
    total_copies: int = Field(1, ge=0)
    is_active: bool = True
    is_reference_only: bool = False

class AddCopies(BaseModel):
    count: int = Field(..., gt=0)

class CreateMember(BaseModel):
    name: str
    email: str
    role: MemberRole = MemberRole.STUDENT
    student_number: Optional[str] = None

class CreateReservation(BaseModel):
    user_id: str
    book_id: str

class StaffAction(BaseModel):
    staff_id: Optional[str] = None

class CancelRequest(BaseModel):
    user_id: Optional[str] = None
    reason: Optional[str] = None

class ReturnRequest(BaseModel):
    condition: ReturnCondition = ReturnCondition.GOOD
    staff_id: Optional[str] = None
    damage_penalty: Optional[float] = Field(None, ge=0)
    lost_penalty: Optional[float] = Field(None, ge=0)

class RenewalRequest(BaseModel):
    user_id: Optional[str] = None

# ----------------------
# Books Endpoints
# ----------------------

@app.post("/books")
def create_book(book: CreateBook, engine: ReservationEngine = Depends(get_engine)):
    doc = BookSchema(available_copies=book.total_copies, **book.model_dump())
    new_id = create_document("book", doc, database=engine.database)
    created = engine.database["book"].find_one({"_id": to_object_id(new_id)})
    return serialize(created)

@app.get("/books/{book_id}")
def get_book(book_id: str, engine: ReservationEngine = Depends(get_engine)):
    doc = engine.catalog.resolve(book_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Book not found")
    return serialize(doc)

@app.get("/books/{book_id}/queue")
def book_queue(book_id: str, engine: ReservationEngine = Depends(get_engine)):
    book = get_book(book_id, engine)
    return [serialize(r) for r in engine.advancer.pending_queue(book["id"])]

@app.post("/books/{book_id}/copies")
def add_copies(book_id: str, payload: AddCopies, engine: ReservationEngine = Depends(get_engine)):
    get_book(book_id, engine)
    held = engine.add_copies(book_id, payload.count)
    return {"book": get_book(book_id, engine), "held_for_waitlist": held}

@app.post("/books/{book_id}/advance")
def advance_queue(book_id: str, engine: ReservationEngine = Depends(get_engine)):
    get_book(book_id, engine)
    return {"advanced": engine.approve_next_and_hold(book_id)}

# ----------------------
# Members Endpoints
# ----------------------

@app.post("/members")
def create_member(member: CreateMember, engine: ReservationEngine = Depends(get_engine)):
    existing = engine.database["member"].find_one({"email": member.email})
    if existing:
        return serialize(existing)
    doc = MemberSchema(**member.model_dump())
    new_id = create_document("member", doc, database=engine.database)
    created = engine.database["member"].find_one({"_id": to_object_id(new_id)})
    return serialize(created)

@app.get("/members/{member_id}")
def get_member(member_id: str, engine: ReservationEngine = Depends(get_engine)):
    doc = engine.members.get(to_object_id(member_id))
    if not doc:
        raise HTTPException(status_code=404, detail="Member not found")
    return serialize(doc)

@app.get("/members/{member_id}/reservations")
def member_reservations(member_id: str, engine: ReservationEngine = Depends(get_engine)):
    get_member(member_id, engine)
    return [serialize(r) for r in engine.reservations.for_user(member_id)]

@app.get("/members/{member_id}/penalties")
def member_penalties(member_id: str, engine: ReservationEngine = Depends(get_engine)):
    get_member(member_id, engine)
    penalties = engine.member_penalties(member_id)
    return {
        "total_pending": engine.penalties.total_pending(member_id),
        "penalties": [serialize(p) for p in penalties],
    }

# ----------------------
# Reservations Endpoints
# ----------------------

NOT_FOUND_CODES = (ErrorCode.ACCOUNT_NOT_FOUND.value, ErrorCode.BOOK_NOT_FOUND.value)

@app.post("/reservations")
def create_reservation(payload: CreateReservation, engine: ReservationEngine = Depends(get_engine)):
    result = engine.create_reservation(payload.user_id, payload.book_id)
    if not result.success:
        if result.error_code == ErrorCode.SUSPICIOUS_ACTIVITY.value:
            status_code = 429
        elif result.error_code in NOT_FOUND_CODES:
            status_code = 404
        else:
            status_code = 400
        raise HTTPException(status_code=status_code, detail=result.model_dump())
    return serialize(engine.reservations.get(result.reservation_id))

@app.get("/reservations/renewals")
def renewal_requests(engine: ReservationEngine = Depends(get_engine)):
    return [serialize(r) for r in engine.reservations.renewal_requests()]

@app.get("/reservations/{reservation_id}")
def get_reservation(reservation_id: str, engine: ReservationEngine = Depends(get_engine)):
    return serialize(require_reservation(engine, reservation_id))

@app.post("/reservations/{reservation_id}/approve")
def approve_reservation(reservation_id: str, payload: StaffAction, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    ok = engine.approve_reservation(reservation_id, payload.staff_id)
    return applied(engine, reservation_id, ok, "approve")

@app.post("/reservations/{reservation_id}/borrow")
def mark_borrowed(reservation_id: str, payload: StaffAction, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    ok = engine.mark_as_borrowed(reservation_id, payload.staff_id)
    return applied(engine, reservation_id, ok, "mark as borrowed")

@app.post("/reservations/{reservation_id}/cancel")
def cancel_reservation(reservation_id: str, payload: CancelRequest, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    ok = engine.cancel_reservation(reservation_id, payload.user_id, payload.reason)
    return applied(engine, reservation_id, ok, "cancel")

@app.post("/reservations/{reservation_id}/reject")
def reject_reservation(reservation_id: str, payload: StaffAction, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    ok = engine.reject_reservation(reservation_id, payload.staff_id)
    return applied(engine, reservation_id, ok, "reject")

@app.post("/reservations/{reservation_id}/return")
def return_book(reservation_id: str, payload: ReturnRequest, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    ok = engine.process_return(reservation_id, payload.condition, payload.staff_id,
                               payload.damage_penalty, payload.lost_penalty)
    return applied(engine, reservation_id, ok, "return")

@app.get("/reservations/{reservation_id}/renewal")
def check_renewal(reservation_id: str, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    return engine.validate_renewal(reservation_id).model_dump()

@app.post("/reservations/{reservation_id}/renewal")
def request_renewal(reservation_id: str, payload: RenewalRequest, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    check = engine.validate_renewal(reservation_id)
    if not check.is_valid:
        raise HTTPException(status_code=400, detail=check.model_dump())
    ok = engine.request_renewal(reservation_id, payload.user_id)
    return applied(engine, reservation_id, ok, "request a renewal for")

@app.post("/reservations/{reservation_id}/renewal/approve")
def approve_renewal(reservation_id: str, payload: StaffAction, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    ok = engine.approve_renewal(reservation_id, payload.staff_id)
    return applied(engine, reservation_id, ok, "approve the renewal of")

@app.post("/reservations/{reservation_id}/renewal/reject")
def reject_renewal(reservation_id: str, payload: StaffAction, engine: ReservationEngine = Depends(get_engine)):
    require_reservation(engine, reservation_id)
    ok = engine.reject_renewal(reservation_id, payload.staff_id)
    return applied(engine, reservation_id, ok, "reject the renewal of")

# ----------------------
# Penalties Endpoints
# ----------------------

@app.post("/penalties/{penalty_id}/pay")
def pay_penalty(penalty_id: str, engine: ReservationEngine = Depends(get_engine)):
    oid = to_object_id(penalty_id)
    if not engine.database["penalty"].find_one({"_id": oid}):
        raise HTTPException(status_code=404, detail="Penalty not found")
    if not engine.pay_penalty(penalty_id):
        raise HTTPException(status_code=409, detail="Penalty already paid")
    return serialize(engine.database["penalty"].find_one({"_id": oid}))

# ----------------------
# Sweeps
# ----------------------

@app.post("/sweeps/expiry")
def run_expiry_sweep(engine: ReservationEngine = Depends(get_engine)):
    result = engine.run_expiry_sweep()
    if result is None:
        return {"skipped": True}
    return {"skipped": False, **asdict(result)}

@app.post("/sweeps/overdue")
def run_overdue_sweep(engine: ReservationEngine = Depends(get_engine)):
    result = engine.run_overdue_accrual_sweep()
    if result is None:
        return {"skipped": True}
    return {"skipped": False, **asdict(result)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
