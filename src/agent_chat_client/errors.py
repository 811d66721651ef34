from __future__ import annotations

from typing import Any


class ChatClientError(RuntimeError):
    pass


class ProtocolDecodeError(ChatClientError):
    """A frame could not be decoded into a known event.

    Terminates the connection. State applied before the bad frame is kept.
    """

    def __init__(self, message: str, *, frame: str | None = None) -> None:
        super().__init__(message)
        self.frame = frame


class UnknownReferenceError(ChatClientError):
    def __init__(self, message: str, *, event_type: str, reference_id: str | None = None) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.reference_id = reference_id


class ProtocolViolationError(ChatClientError):
    """A well-formed event that breaks the transition rules (e.g. text after message-end)."""

    def __init__(self, message: str, *, event_type: str, reference_id: str | None = None) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.reference_id = reference_id


class StreamConnectionError(ChatClientError):
    def __init__(self, message: str, *, status_code: int | None = None, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.__cause__ = cause


class TurnCancelledError(ChatClientError):
    pass


class TurnInProgressError(ChatClientError):
    pass


class ApprovalDecisionError(ChatClientError):
    def __init__(
        self,
        message: str,
        *,
        approval_id: str,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.approval_id = approval_id
        self.status_code = status_code
        self.code = code


class ApiError(ChatClientError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "UNKNOWN_ERROR",
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.details = details
