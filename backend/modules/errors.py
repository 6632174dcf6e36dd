"""
modules/errors.py
-----------------
Exception hierarchy shared by the planning pipeline.

Stage boundaries catch these (and anything else) and turn them into
warnings, error traces, or terminal booking statuses. Only the API layer
maps them to HTTP responses.
"""

from __future__ import annotations


class PlannerError(RuntimeError):
    """Base class for every domain error raised by the planner."""


class DiscoveryError(PlannerError):
    """A discovery channel could not produce results after retrying."""


class NonRetryableHTTPError(DiscoveryError):
    """A 4xx response other than 429; retrying would not help."""

    def __init__(self, status_code: int, body: str, source: str = "upstream") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"{source} request failed ({status_code}): {body[:200]}")


class PlanParseError(PlannerError):
    """Generative output contained no parseable JSON object."""


class PersistenceError(PlannerError):
    """Writing an approved itinerary to durable storage failed."""


class ApprovalNotFound(PlannerError):
    """No pending approval exists for the given run id."""
