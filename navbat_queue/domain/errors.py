from __future__ import annotations


class QueueError(Exception):
    kind = "queue_error"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidOrganization(QueueError):
    kind = "invalid_organization"
    status_code = 404


class ValidationError(QueueError):
    kind = "validation_error"
    status_code = 422


class TicketNotFound(QueueError):
    kind = "ticket_not_found"
    status_code = 404


class NoPendingTicket(QueueError):
    kind = "no_pending_ticket"
    status_code = 409


class InvalidTransition(QueueError):
    kind = "invalid_transition"
    status_code = 409


class ConflictRetryable(QueueError):
    kind = "conflict_retryable"
    status_code = 503


class StorageUnavailable(QueueError):
    kind = "storage_unavailable"
    status_code = 503
