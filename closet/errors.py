"""Error taxonomy shared by the preprocessing pipeline, the remote client and the coordinator.

Errors are typed where they are raised. Nothing downstream inspects
message text to decide what went wrong; the coordinator only looks at
``GenerationError.kind``.
"""

from enum import Enum
from typing import Dict, Optional, Tuple


class ErrorKind(str, Enum):
    AUTH = "auth_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    MALFORMED_REQUEST = "malformed_request"
    NO_IMAGE_IN_RESPONSE = "no_image_in_response"
    TIMEOUT = "timeout"
    NETWORK = "network_error"
    COMPRESSION = "compression_error"
    UNKNOWN = "unknown"


# (title, message) shown to the user for each kind
USER_MESSAGES: Dict[ErrorKind, Tuple[str, str]] = {
    ErrorKind.AUTH: (
        "API Key Error",
        "Invalid or expired API key. Please update your API key in settings.",
    ),
    ErrorKind.QUOTA_EXCEEDED: (
        "API Quota Exceeded",
        "API quota exceeded. Please check your billing or try again later.",
    ),
    ErrorKind.PAYLOAD_TOO_LARGE: (
        "Image Too Large",
        "Image file size exceeds API limits. Try using smaller, lower resolution images.",
    ),
    ErrorKind.MALFORMED_REQUEST: (
        "Request Rejected",
        "The generation service rejected the request. Please try again with different images.",
    ),
    ErrorKind.NO_IMAGE_IN_RESPONSE: (
        "No Image Generated",
        "The service did not return an image. Try different photos or clothing items.",
    ),
    ErrorKind.TIMEOUT: (
        "Generation Timeout",
        "Generation timed out. Please try again.",
    ),
    ErrorKind.NETWORK: (
        "Network Error",
        "Network error. Please check your internet connection and try again.",
    ),
    ErrorKind.COMPRESSION: (
        "Image Processing Failed",
        "Image compression failed. Try different photos.",
    ),
    ErrorKind.UNKNOWN: (
        "Generation Failed",
        "An unexpected error occurred. Please try again.",
    ),
}


class GenerationError(Exception):
    """Base class for every typed failure of a generation job."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        detail: str = "",
        status_code: Optional[int] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(detail or self.kind.value)
        self.detail = detail
        self.status_code = status_code
        self.user_message = user_message

    @property
    def routes_to_settings(self) -> bool:
        return self.kind in (ErrorKind.AUTH, ErrorKind.QUOTA_EXCEEDED)

    def title_and_message(self) -> Tuple[str, str]:
        title, message = USER_MESSAGES[self.kind]
        return title, self.user_message or message


class AuthError(GenerationError):
    kind = ErrorKind.AUTH


class QuotaExceeded(GenerationError):
    kind = ErrorKind.QUOTA_EXCEEDED


class PayloadTooLarge(GenerationError):
    kind = ErrorKind.PAYLOAD_TOO_LARGE


class MalformedRequest(GenerationError):
    kind = ErrorKind.MALFORMED_REQUEST

    def __init__(self, detail: str = "", status_code: Optional[int] = None,
                 user_message: Optional[str] = None, credential_invalid: bool = False):
        super().__init__(detail, status_code=status_code, user_message=user_message)
        self.credential_invalid = credential_invalid

    @property
    def routes_to_settings(self) -> bool:
        return self.credential_invalid


class NoImageInResponse(GenerationError):
    kind = ErrorKind.NO_IMAGE_IN_RESPONSE


class JobTimeout(GenerationError):
    kind = ErrorKind.TIMEOUT


class NetworkError(GenerationError):
    kind = ErrorKind.NETWORK


class CompressionError(GenerationError):
    kind = ErrorKind.COMPRESSION


class UnknownGenerationError(GenerationError):
    kind = ErrorKind.UNKNOWN


def error_kind_for(exc: BaseException) -> ErrorKind:
    if isinstance(exc, GenerationError):
        return exc.kind
    return ErrorKind.UNKNOWN


class JobAlreadyRunning(Exception):
    """Raised by the start API while ``generationInProgress`` is set."""


class PreconditionFailed(Exception):
    """A job could not enter ``Running``; surfaced as a warning, not a failure."""

    MESSAGES = {
        "missing_credential": ("API Key Required", "Please set your API key in settings."),
        "missing_avatar": ("Avatar Required", "Please generate your avatar first."),
        "invalid_avatar": (
            "Avatar Error",
            "Selected avatar is invalid. Please check your avatar settings.",
        ),
        "not_enough_photos": ("More Photos Needed", "Please upload at least {n} photos."),
        "empty_outfit": ("Empty Outfit", "Add some items to your outfit first!"),
        "unknown_clothing": ("Item Not Found", "A selected clothing item is no longer in your wardrobe."),
        "no_failed_poses": ("Nothing To Retry", "All avatar poses were generated successfully."),
        "missing_source_photos": (
            "Photos Required",
            "The original photos are no longer available. Please upload them again to retry.",
        ),
    }

    def __init__(self, reason: str, **params):
        self.reason = reason
        self.params = params
        super().__init__(reason)

    def title_and_message(self) -> Tuple[str, str]:
        title, message = self.MESSAGES.get(self.reason, ("Cannot Start", self.reason))
        return title, message.format(**self.params) if self.params else message

    @property
    def routes_to_settings(self) -> bool:
        return self.reason == "missing_credential"