import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Database
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    database_name: Optional[str] = os.getenv("DATABASE_NAME")

    # Reservation lifecycle
    pickup_window_minutes: float = float(os.getenv("PICKUP_WINDOW_MINUTES", "2"))
    loan_period_minutes: float = float(os.getenv("LOAN_PERIOD_MINUTES", "0"))
    renewal_period_days: int = int(os.getenv("RENEWAL_PERIOD_DAYS", "14"))

    # Penalties
    overdue_rate_per_minute: float = float(os.getenv("OVERDUE_RATE_PER_MINUTE", "10"))
    damage_fees: Dict[str, float] = field(default_factory=lambda: {
        "Damaged-Minor": float(os.getenv("DAMAGE_FEE_MINOR", "50")),
        "Damaged-Moderate": float(os.getenv("DAMAGE_FEE_MODERATE", "100")),
        "Damaged-Major": float(os.getenv("DAMAGE_FEE_MAJOR", "200")),
    })
    lost_book_fee: float = float(os.getenv("LOST_BOOK_FEE", "2000"))

    # Abuse detection
    suspicious_window_seconds: int = int(os.getenv("SUSPICIOUS_WINDOW_SECONDS", "10"))
    suspicious_threshold: int = int(os.getenv("SUSPICIOUS_THRESHOLD", "3"))

    # Background sweeps
    enable_sweeps: bool = _flag("ENABLE_SWEEPS", "True")
    expiry_sweep_interval_seconds: float = float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "30"))
    overdue_sweep_interval_seconds: float = float(os.getenv("OVERDUE_SWEEP_INTERVAL_SECONDS", "30"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def pickup_window(self) -> timedelta:
        return timedelta(minutes=self.pickup_window_minutes)

    @property
    def loan_period(self) -> timedelta:
        return timedelta(minutes=self.loan_period_minutes)

    @property
    def renewal_period(self) -> timedelta:
        return timedelta(days=self.renewal_period_days)

    @property
    def suspicious_window(self) -> timedelta:
        return timedelta(seconds=self.suspicious_window_seconds)


settings = Settings()
