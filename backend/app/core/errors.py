"""Error taxonomy for webhook processing.

Every error knows the pipeline stage it belongs to, whether the processor
should retry the delivery, and the HTTP status that communicates that.
Permanent errors answer 4xx; transient infrastructure errors answer 5xx.
"""
from typing import Optional


class WebhookError(Exception):
    """Base class for all errors raised while handling a notification"""

    stage = "internal"
    category = "internal"
    retryable = True
    status_code = 500

    def __init__(self, message: str = "", stage: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if stage is not None:
            self.stage = stage

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "error": self.__class__.__name__,
            "category": self.category,
            "retryable": self.retryable,
            "message": self.message,
        }


class PermanentError(WebhookError):
    category = "permanent"
    retryable = False
    status_code = 400


class TransientError(WebhookError):
    category = "transient"
    retryable = True
    status_code = 500


# Signature verification

class VerificationError(PermanentError):
    stage = "verify"


class MissingSecret(VerificationError):
    pass


class MalformedSignature(VerificationError):
    pass


class TimestampMismatch(VerificationError):
    pass


class SignatureInvalid(VerificationError):
    pass


# Replay protection

class ReplayError(PermanentError):
    stage = "verify"


class TooOld(ReplayError):
    pass


class TooFarFuture(ReplayError):
    pass


class PayloadError(PermanentError):
    stage = "parse"


# Infrastructure

class StorageError(TransientError):
    pass


class IdempotencyError(TransientError):
    stage = "idempotency"


class LockTimeout(IdempotencyError):
    pass


class ProcessorAPIError(TransientError):
    stage = "fetch"

    def __init__(self, message: str = "", status: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.status = status


class ReconcileError(TransientError):
    stage = "reconcile"
