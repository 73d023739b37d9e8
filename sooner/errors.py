"""Queue error taxonomy.

Each error carries a stable ``code`` and the HTTP status the API answers
with, so request handlers can let them propagate to the app-level handler.
"""


class QueueError(Exception):
    code = "queue_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"detail": self.message, "code": self.code}


class InvalidPartySize(QueueError):
    code = "invalid_party_size"
    status_code = 400


class InvalidTransition(QueueError):
    code = "invalid_transition"
    status_code = 409


class NotFound(QueueError):
    code = "not_found"
    status_code = 404


class StoreUnavailable(QueueError):
    code = "store_unavailable"
    status_code = 503


class QueueClosed(QueueError):
    code = "queue_closed"
    status_code = 403


class AlreadyQueued(QueueError):
    code = "already_queued"
    status_code = 400
