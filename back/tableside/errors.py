"""
Domain errors raised by the session, order and propagation services.

The HTTP layer maps these onto status codes; services never raise
HTTPException themselves.
"""


class TablesideError(Exception):
    """Base class for domain errors."""


class TableNotFound(TablesideError):
    def __init__(self, ref: object):
        self.ref = ref
        super().__init__(f"Table {ref} not found")


class OrderNotFound(TablesideError):
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class SessionNotFound(TablesideError):
    """The targeted session does not exist or is no longer active."""
    def __init__(self, message: str, session_id: str | None = None):
        self.session_id = session_id
        super().__init__(message)


class SessionInactive(SessionNotFound):
    """The table has no active session at submission time; guests must re-resolve."""


class SessionConflict(TablesideError):
    """The caller's view of the active session is stale."""
    def __init__(self, message: str, expected_session_id: str | None = None,
                 active_session_id: str | None = None):
        self.expected_session_id = expected_session_id
        self.active_session_id = active_session_id
        super().__init__(message)


class ValidationError(TablesideError):
    """Malformed quantity, price, PIN or device identity. Never retried."""


class PartialBulkFailure(TablesideError):
    def __init__(self, deleted: list[int], failed: list[int]):
        self.deleted = deleted
        self.failed = failed
        super().__init__(f"{len(failed)} of {len(deleted) + len(failed)} deletions failed")


class DeadlineExceeded(TablesideError):
    """A guest request ran out of time. `committed` holds the rows written before it did."""
    def __init__(self, message: str, committed: list | None = None):
        self.committed = committed or []
        super().__init__(message)


class TransportUnavailable(TablesideError):
    """The realtime channel is down; writes still succeed."""
