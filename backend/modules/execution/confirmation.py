"""
modules/execution/confirmation.py
-----------------------------------
Per-site confirmation detection.

A booking only counts as successful when the final page carries an
explicit confirmation signal. What that signal looks like differs by
booking site, so detectors are registered per domain and looked up from
the booking URL.
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Optional, Pattern
from urllib.parse import urlparse

CONFIRMED = "CONFIRMED"

# Keyword-anchored reference: "Order #AB12-99", "booking reference: XK77Q1"
_GENERIC_REFERENCE = re.compile(
    r"(?:confirmation|order|booking|reference|ticket)\s*(?:#|number|no\.?|id|:)\s*:?\s*"
    r"([A-Z0-9][A-Z0-9-]{3,19})",
    re.IGNORECASE,
)
_ALPHA_ONLY = re.compile(r"^[a-z]+$", re.IGNORECASE)


@dataclass(frozen=True)
class ConfirmationDetector:
    name: str
    success_phrases: tuple[str, ...]
    number_patterns: tuple[Pattern[str], ...] = ()
    use_generic_reference: bool = True

    def is_confirmed(self, text: str) -> bool:
        lowered = text.lower()
        return any(p in lowered for p in self.success_phrases)

    def confirmation_number(self, text: str) -> Optional[str]:
        """
        The confirmation code found in `text`, `CONFIRMED` when only a
        success phrase is present, else None.
        """
        if not text:
            return None
        for pattern in self.number_patterns:
            m = pattern.search(text)
            if m:
                return m.group(1)
        if self.use_generic_reference:
            m = _GENERIC_REFERENCE.search(text)
            # a bare word after "order" is prose, not a code
            if m and not _ALPHA_ONLY.match(m.group(1)):
                return m.group(1)
        if self.is_confirmed(text):
            return CONFIRMED
        return None


EVENTBRITE_DETECTOR = ConfirmationDetector(
    name="eventbrite",
    success_phrases=(
        "thanks for your order",
        "your order is confirmed",
        "you're going",
        "registration confirmed",
        "successfully registered",
        "take me to my tickets",
    ),
    number_patterns=(re.compile(r"#(\d{8,15})"),),
)


@dataclass
class DetectorRegistry:
    default: ConfirmationDetector = EVENTBRITE_DETECTOR
    by_domain: dict[str, ConfirmationDetector] = field(default_factory=dict)

    def register(self, domain: str, detector: ConfirmationDetector) -> None:
        self.by_domain[domain.lower().removeprefix("www.")] = detector

    def for_url(self, url: Optional[str]) -> ConfirmationDetector:
        """Detector for the URL's host or any parent domain of it."""
        host = (urlparse(url or "").hostname or "").lower().removeprefix("www.")
        while host:
            if host in self.by_domain:
                return self.by_domain[host]
            _, _, host = host.partition(".")
        return self.default


def extract_domain(url: Optional[str]) -> Optional[str]:
    host = urlparse(url or "").hostname
    return host.lower().removeprefix("www.") if host else None
