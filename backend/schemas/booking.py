"""
schemas/booking.py
------------------
Booking outcomes and the profile used to fill checkout forms.

Every bookable itinerary item produces exactly one BookingResult; its
status is one of the closed BookingStatus set and is never retried.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class BookingActionType(str, Enum):
    CHECK_AVAILABILITY = "check_availability"
    RESERVE            = "reserve"
    BOOK               = "book"
    REGISTER           = "register"
    INFO_ONLY          = "info_only"


class BookingStatus(str, Enum):
    SUCCESS                = "success"
    FAILED                 = "failed"
    SKIPPED                = "skipped"
    SOLD_OUT               = "sold_out"
    WAITLIST               = "waitlist"
    LOGIN_REQUIRED         = "login_required"
    CAPTCHA_BLOCKED        = "captcha_blocked"
    PAYMENT_REQUIRED       = "payment_required"
    CUSTOM_FIELDS_REQUIRED = "custom_fields_required"
    PAGE_ERROR             = "page_error"
    TIMEOUT                = "timeout"
    NO_ACTION_MANUAL       = "no_action_manual"
    NO_SOURCE_URL          = "no_source_url"

    @property
    def is_skip(self) -> bool:
        """Statuses reported as 'skipped' in run summaries."""
        return self in (
            BookingStatus.SKIPPED,
            BookingStatus.NO_SOURCE_URL,
            BookingStatus.NO_ACTION_MANUAL,
        )


@dataclass
class UserProfile:
    name: str
    email: str
    phone: Optional[str] = None
    dietary_preferences: list[str] = field(default_factory=list)
    special_requests: str = ""

    @property
    def first_name(self) -> str:
        parts = self.name.strip().split()
        return parts[0] if parts else self.name

    @property
    def last_name(self) -> str:
        """Everything after the first word; single-word names reuse it."""
        parts = self.name.strip().split()
        return " ".join(parts[1:]) if len(parts) > 1 else self.first_name


@dataclass(frozen=True)
class BookingResult:
    event_id: str
    event_name: str
    action_type: BookingActionType
    status: BookingStatus
    confirmation_number: Optional[str] = None
    screenshot_path: Optional[str] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "eventId": self.event_id,
            "eventName": self.event_name,
            "actionType": self.action_type.value,
            "status": self.status.value,
            "confirmationNumber": self.confirmation_number,
            "screenshotPath": self.screenshot_path,
            "error": self.error,
            "timestamp": self.timestamp,
        }
