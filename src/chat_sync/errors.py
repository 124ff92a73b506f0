"""
Error taxonomy for the synchronization engine.

Every failure raised by a backend collaborator or a sync component is one of
the 'ChatSyncError' subclasses below. Transport-level exceptions ('httpx'
errors, HTTP status codes) are converted at the component boundary, so the UI
layer only ever has to handle this small, closed set:

    AuthError        no current user, or the user may not perform the action.
    NetworkError     transient transport failure; reads are retried, writes
                     surface a retry affordance.
    UploadError      attachment upload failed at a given 'UploadStage'.
    ConflictError    a rejected state change (non-monotonic status, duplicate
                     conversation). Logged, not shown to the user.
    NotFoundError    the record is already gone. Callers treat it as a no-op.
    ChatValidationError
                     a record that breaks a data-model invariant.
    StorageError     object storage refused or failed a request.
"""

from enum import StrEnum


class ChatSyncError(Exception):
    """Base class for every error raised by 'chat_sync'."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthError(ChatSyncError):
    pass


class NetworkError(ChatSyncError):
    pass


class ConflictError(ChatSyncError):
    pass


class NotFoundError(ChatSyncError):
    pass


class ChatValidationError(ChatSyncError):
    pass


class StorageError(ChatSyncError):
    pass


class StoragePermissionError(StorageError):
    pass


class UploadStage(StrEnum):
    """The step of the upload pipeline that failed."""

    PERMISSION = "permission"
    TRANSFER = "transfer"
    COMMIT = "commit"


class UploadError(ChatSyncError):
    """
    An attachment upload that did not complete.

    'PERMISSION' failures need user action (sign in again, grant access) and
    are never retried automatically. 'TRANSFER' and 'COMMIT' failures can be
    retried with the same blob.
    """

    def __init__(self, message: str, stage: UploadStage):
        self.stage = stage
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.stage != UploadStage.PERMISSION
