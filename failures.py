"""Maps publish/download errors onto a closed failure taxonomy.

The publishing APIs do not expose structured failure codes for most media
rejections, so the rules below match on status codes and message text. They
are the only place coupled to the collaborators' error wording.
"""
from enum import Enum
from typing import Callable, List, Optional, Tuple


class FailureReason(str, Enum):
    DURATION_EXCEEDED = "duration_exceeded"
    SIZE_EXCEEDED = "size_exceeded"
    FORBIDDEN = "forbidden"
    UNSUPPORTED_FORMAT = "unsupported_format"
    RATE_LIMITED = "rate_limited"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


DESCRIPTIONS = {
    FailureReason.DURATION_EXCEEDED: "Video too long (>2 minutes)",
    FailureReason.SIZE_EXCEEDED: "Video file too large",
    FailureReason.FORBIDDEN: "X API forbidden (video restrictions)",
    FailureReason.UNSUPPORTED_FORMAT: "Unsupported video format",
    FailureReason.RATE_LIMITED: "Rate limit exceeded",
    FailureReason.CLIENT_ERROR: "Client error",
    FailureReason.SERVER_ERROR: "Server error",
    FailureReason.UNKNOWN: "Unknown upload error",
}


def status_code(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status from the error or its attached response."""
    for candidate in (
        getattr(error, "status_code", None),
        getattr(getattr(error, "response", None), "status_code", None),
        getattr(error, "code", None),
    ):
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return candidate
    return None


def _contains(*needles: str) -> Callable[[str, Optional[int]], bool]:
    return lambda message, _status: any(n in message for n in needles)


# Evaluated in order; first match wins.
RULES: List[Tuple[FailureReason, Callable[[str, Optional[int]], bool]]] = [
    (FailureReason.DURATION_EXCEEDED, _contains("video longer than", "duration")),
    (FailureReason.SIZE_EXCEEDED, _contains("too large", "file size")),
    (FailureReason.FORBIDDEN, lambda m, s: s == 403 or "forbidden" in m),
    (FailureReason.UNSUPPORTED_FORMAT, _contains("format", "codec")),
    (FailureReason.RATE_LIMITED, lambda m, s: s == 429 or "rate limit" in m or "too many requests" in m),
    (FailureReason.CLIENT_ERROR, lambda m, s: s is not None and 400 <= s < 500),
    (FailureReason.SERVER_ERROR, lambda m, s: s is not None and s >= 500),
]


def classify(error: BaseException) -> FailureReason:
    message = str(error).lower()
    status = status_code(error)
    for reason, matches in RULES:
        if matches(message, status):
            return reason
    return FailureReason.UNKNOWN


def describe(reason: FailureReason, error: Optional[BaseException] = None) -> str:
    text = DESCRIPTIONS[reason]
    status = status_code(error) if error is not None else None
    if reason in (FailureReason.CLIENT_ERROR, FailureReason.SERVER_ERROR) and status is not None:
        return f"{text}: {status}"
    return text
