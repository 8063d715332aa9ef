"""Exception hierarchy for the backup engine.

Every error raised by the engine derives from :class:`BackupError` and
carries a ``retryable`` flag that the retry controller uses to decide
whether another attempt makes sense.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup engine errors."""

    retryable: bool = False


class ValidationError(BackupError):
    """A required field is missing or invalid."""


class TaskStateError(BackupError):
    """A task was asked to make an illegal status transition."""


class TaskNotFoundError(BackupError):
    """No task with the given identifier exists in the task store."""

    def __init__(self, task_id: str):
        super().__init__(f"task with ID {task_id} not found")
        self.task_id = task_id


class TaskStoreError(BackupError):
    """The persisted task list could not be read or written."""

    retryable = True


class CredentialError(BackupError):
    """The credential vault could not be read, decrypted or written."""


class VaultLockedError(CredentialError):
    """The vault was opened without a master password."""


class CredentialNotFoundError(CredentialError):
    """The vault holds no entry for the requested provider."""

    def __init__(self, provider: str):
        super().__init__(f"no credentials found for provider: {provider}")
        self.provider = provider


class TransformError(BackupError):
    """Compression or encryption of the backup payload failed."""


class DecryptionError(TransformError):
    """Ciphertext was malformed, tampered with or encrypted under another key."""


class UnsupportedProviderError(BackupError):
    """The requested storage provider is not registered."""

    def __init__(self, provider: str):
        super().__init__(f"unsupported provider {provider}")
        self.provider = provider


class ProviderError(BackupError):
    """A storage provider failed during authentication or transfer."""

    retryable = True


class SyncError(BackupError):
    """The folder watcher of a sync task could not be started."""


class TaskTimeoutError(BackupError):
    """A task exceeded its wall-clock ceiling."""


class TaskPanicError(BackupError):
    """An unexpected fault during execution, converted at the task boundary."""


class OperationCancelledError(BackupError):
    """A retried operation was cancelled before it could finish."""


class RetryExhaustedError(BackupError):
    """Every allowed attempt of a retried operation failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class ScheduleError(BackupError):
    """A task could not be scheduled, or a scheduled run failed."""


def is_retryable(error: BaseException) -> bool:
    """Return whether ``error`` is worth another attempt.

    Engine errors answer through their ``retryable`` flag. Anything else,
    network and IO failures included, is treated as transient.
    """
    if isinstance(error, BackupError):
        return error.retryable
    return True
