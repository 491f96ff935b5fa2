"""Exception taxonomy for the completion-and-progress layer.

Only two of these ever cross a service boundary as real exceptions:
CompletionValidationError (caller bug, surfaced immediately) and
SnapshotNotFoundError (unknown audit id).  TransientStoreError is caught
by the completion operations and turned into a retry; RetryExhaustedError
is handed to listeners rather than raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lms_progress.models.completion import CompletionAttempt


class ProgressLayerError(Exception):
    """Base class for errors raised by this package."""


class TransientStoreError(ProgressLayerError):
    """The remote store failed in a way that may succeed on retry."""


class CompletionValidationError(ProgressLayerError, ValueError):
    """The completion request is malformed; retrying can never succeed."""


class RetryExhaustedError(ProgressLayerError):
    """A queued completion ran out of retries."""

    def __init__(self, attempt: CompletionAttempt) -> None:
        super().__init__(
            f"{attempt.kind} completion for unit {attempt.unit_id} failed after "
            f"{attempt.retry_count} retries; please refresh the page"
        )
        self.attempt = attempt


class SnapshotNotFoundError(ProgressLayerError, KeyError):
    """No snapshot rows were stored under the requested audit id."""
