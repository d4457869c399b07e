from __future__ import annotations


class QuoterError(Exception):
    """Base error. `reason` is the short code written to events and run summaries."""

    reason = "error"

    def __init__(self, message: str = "", reason: str | None = None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class ValidationError(QuoterError):
    reason = "invalid_request"


class TransientFetchError(QuoterError):
    reason = "fetch_failed"


class StaleDataError(TransientFetchError):
    reason = "STALE_BOOK"


class VenueRejection(QuoterError):
    reason = "venue_rejected"


class StoreError(QuoterError):
    reason = "store_failed"


class FatalConfigError(QuoterError):
    reason = "fatal_config"
