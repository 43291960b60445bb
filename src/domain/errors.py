from __future__ import annotations


class SignedRequestError(Exception):
    """Base for every reason a signed payload is refused.

    The ``reason`` code is for logs and metrics only; callers at the HTTP
    boundary collapse all subclasses into one opaque rejection.
    """

    reason = "rejected"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        if reason:
            self.reason = reason


class MalformedInput(SignedRequestError):
    reason = "malformed_input"


class UnsupportedAlgorithm(SignedRequestError):
    reason = "unsupported_algorithm"


class InvalidSignature(SignedRequestError):
    reason = "invalid_signature"


class TimestampOutOfRange(SignedRequestError):
    reason = "timestamp_out_of_range"


class PersistenceFailure(Exception):
    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class DispatchFailure(Exception):
    def __init__(self, event_id: str, message: str) -> None:
        super().__init__(message)
        self.event_id = event_id
