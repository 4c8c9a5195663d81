"""Error taxonomy and service error classification."""

import json

STOPPED = "Stopped"
ABORTED = "Aborted"
DEFAULT_ERROR = "An unexpected error occurred. Please check the logs for details."
SAFETY_BLOCK = (
    "Safety Block: The prompt or image triggered a safety filter. "
    "Try simplifying the text prompt or using a different image."
)


class StoryWeaverError(Exception):
    """Base class for all StoryWeaver errors."""


class InvalidRequest(StoryWeaverError):
    """Malformed input rejected before any state is touched."""


class SessionNotFound(StoryWeaverError):
    """The addressed session or scene no longer exists."""


class UserCancelled(StoryWeaverError):
    """The operation was aborted by an explicit stop."""

    def __init__(self, message: str = STOPPED) -> None:
        super().__init__(message)


class ServiceFailure(StoryWeaverError):
    """The generation service reported an error or a safety block."""


class QuotaFailure(StoryWeaverError):
    """Pre-flight rejection: not enough credit or daily allowance."""


class StorageCapacityError(StoryWeaverError):
    """The key/value store has no room for the value being written."""


class ExtensionUnavailable(StoryWeaverError):
    """The scene has no clip carrying a continuation handle."""

    def __init__(self, message: str = "Could not find a previous clip to extend.") -> None:
        super().__init__(message)


def _from_json_body(message: str) -> str | None:
    try:
        parsed = json.loads(message)
    except (ValueError, TypeError):
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("error"), dict):
        return None
    error = parsed["error"]
    detail = error.get("message")
    if isinstance(detail, str) and detail:
        if "quota" in detail.lower():
            return f"Quota exceeded. {detail}"
        return detail
    status = error.get("status") or ""
    if error.get("code") == 500 or "Internal Server Error" in str(status):
        return (
            "The AI model encountered an internal server error. "
            "Please try your request again."
        )
    return None


def parse_error_message(error: BaseException | None) -> str:
    """Turn a raw service exception into a message fit for the user.

    Cancellation collapses to ``"Aborted"`` so callers can tell it apart from
    real failures; everything else is classified by its text.
    """
    if error is None:
        return DEFAULT_ERROR
    if isinstance(error, UserCancelled):
        return ABORTED

    raw = str(error)
    lowered = raw.lower()

    if "aborted" in lowered or type(error).__name__ == "CancelledError":
        return ABORTED
    if "the caller does not have permission" in lowered:
        return (
            "API Key error: Your selected key does not have permission for this "
            "model. Please select a key from a project with the Generative AI "
            "API enabled."
        )

    from_json = _from_json_body(raw)
    if from_json:
        return from_json

    if "api key not valid" in lowered:
        return (
            "Invalid API Key. Please ensure your API key is correct and has the "
            "necessary permissions."
        )
    if "blocked" in lowered or "safety" in lowered:
        return (
            "Your prompt was blocked due to the content policy. "
            "Please modify your prompt and try again."
        )
    if "429" in lowered or "resource_exhausted" in lowered or "rate limit" in lowered:
        return (
            "You've exceeded your quota. Please check your plan and billing "
            "details, then try again."
        )
    if "503" in lowered or "unavailable" in lowered or "overloaded" in lowered:
        return "The model is temporarily unavailable or overloaded. Please try again later."
    if "requested entity was not found" in lowered:
        return (
            "API Key error. The selected API key may not have access to this "
            "model. Please try selecting your key again."
        )
    return raw or DEFAULT_ERROR


def video_error_message(error: BaseException) -> str:
    """Like ``parse_error_message`` but with guidance for empty video results."""
    message = parse_error_message(error)
    if "no video was returned" in str(error).lower() or "no video was returned" in message:
        return SAFETY_BLOCK
    return message


def is_api_key_error(message: str) -> bool:
    return (
        "API Key error" in message
        or "entity was not found" in message
        or "Invalid API Key" in message
    )
