from __future__ import annotations

from navbat_queue.domain.errors import ConflictRetryable, QueueError, StorageUnavailable

# deadlock victim, lock request timeout, unique constraint, unique index
RETRYABLE_ERROR_CODES = ("1205", "1222", "2627", "2601")


def classify_error(exc: BaseException) -> QueueError:
    """Maps a driver error to contention (retry) or an unavailable store."""
    text = str(exc)
    if any(f"({code})" in text or f" {code} " in text for code in RETRYABLE_ERROR_CODES):
        return ConflictRetryable(f"SQL contention: {text}")
    return StorageUnavailable(f"SQL Server failure: {text}")
