"""
services/scheduling/errors.py
Rejection taxonomy for the scheduling core.

Every error carries a stable `code` for the wire payload and a `retryable`
flag telling the client whether re-fetching availability and resubmitting
can succeed. Dispatch failures (calendar links, notifications) are not part
of this taxonomy: adapters log them and report a falsy result instead.
"""


class SchedulingError(Exception):
    code = "scheduling_error"
    status_code = 400
    retryable = False

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidRequest(SchedulingError):
    """Malformed input: missing fields, end before start, unknown references."""
    code = "invalid_request"


class NotFound(InvalidRequest):
    code = "not_found"
    status_code = 404


class InvalidTransition(SchedulingError):
    """Requested status change is not allowed from the current status."""
    code = "invalid_transition"
    status_code = 409


class SlotNoLongerAvailable(SchedulingError):
    """The slot was taken between listing and booking. Re-fetch and retry."""
    code = "slot_no_longer_available"
    status_code = 409
    retryable = True


class PersistenceError(SchedulingError):
    """Storage failed for infrastructure reasons. The whole request may be retried."""
    code = "persistence_error"
    status_code = 503
    retryable = True


# ── Storage signals ───────────────────────────────────────────
# Raised by storage implementations and translated by the transaction.

class ConstraintViolation(Exception):
    """Storage refused the write because it would overlap an active booking."""


class ReferenceCollision(Exception):
    """The booking reference is already taken."""

    def __init__(self, reference: str):
        super().__init__(f"Booking reference {reference} already exists")
        self.reference = reference
