"""Failure taxonomy for the WhatsApp message pipeline.

Every class except ``GatewayAuthError`` ends with a processed marker and a 200
response; the gateway retries non-2xx responses and a retry would repeat side
effects such as task creation.
"""
from typing import Optional


class PipelineError(Exception):
    category = "generic"
    reason = "error"

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.user_message = user_message


class GatewayAuthError(PipelineError):
    reason = "unauthorized"


class IdentityError(PipelineError):
    category = "linking"


class NotRegistered(IdentityError):
    reason = "not_registered"


class NotLinked(IdentityError):
    reason = "not_linked"


class NotEntitled(IdentityError):
    category = "subscription"
    reason = "not_entitled"


class TranscriptionError(PipelineError):
    category = "transcription"
    reason = "transcription_failed"


class ClassificationError(PipelineError):
    reason = "classification_failed"


class ExecutionError(PipelineError):
    reason = "execution_failed"


class DeliveryError(PipelineError):
    reason = "delivery_failed"


_CATEGORY_HINTS = (
    ("subscription", ("subscription", "suscrip", "entitle")),
    ("linking", ("link", "vincul", "registered", "not_linked")),
    ("transcription", ("transcri", "audio", "media", "whisper")),
)


def categorize_error_text(text: str) -> str:
    """Map a free-form error message onto one of the user-facing categories."""
    lowered = (text or "").lower()
    for category, needles in _CATEGORY_HINTS:
        if any(needle in lowered for needle in needles):
            return category
    return "generic"
