from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM})

MESSAGE_STATUSES = frozenset({"sending", "streaming", "sent", "error"})

TOOL_CATEGORIES = frozenset({"file", "browser", "terminal", "system", "api"})
RISK_LEVELS = frozenset({"low", "medium", "high", "critical"})
APPROVAL_RISK_LEVELS = frozenset({"medium", "high", "critical"})

TOOL_TERMINAL_STATUSES = frozenset({"success", "error"})
APPROVAL_TERMINAL_STATUSES = frozenset({"approved", "rejected", "expired"})

# Error kinds carried by messages finalized as "error".
ERROR_KIND_STREAM = "stream"
ERROR_KIND_CONNECTION = "connection"
ERROR_KIND_PROTOCOL = "protocol"
ERROR_KIND_CANCELLED = "cancelled"


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip())
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Field {key!r} must be a non-empty string")
    return value


def _require_choice(payload: dict[str, Any], key: str, choices: frozenset[str]) -> str:
    value = _require_str(payload, key)
    if value not in choices:
        raise ValueError(f"Field {key!r} must be one of {sorted(choices)}, got {value!r}")
    return value


def _params(payload: dict[str, Any]) -> dict[str, Any]:
    params = payload.get("params", {})
    if params is None:
        return {}
    if not isinstance(params, dict):
        raise ValueError("Field 'params' must be an object")
    return dict(params)


@dataclass
class ToolCall:
    id: str
    message_id: str
    name: str
    category: str
    risk_level: str
    is_local: bool
    params: dict[str, Any] = field(default_factory=dict)
    status: str = "running"
    result: str | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TOOL_TERMINAL_STATUSES

    def complete(self, status: str, text: str | None) -> bool:
        """Move a running call to a terminal status. Returns False if already terminal."""
        if status not in TOOL_TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal tool status: {status!r}")
        if self.is_terminal:
            return False
        self.status = status
        if status == "success":
            self.result = text
        else:
            self.error_message = text
        return True

    @classmethod
    def from_wire(cls, payload: dict[str, Any], message_id: str) -> ToolCall:
        status = payload.get("status", "running")
        if status != "running" and status not in TOOL_TERMINAL_STATUSES:
            raise ValueError(f"Invalid tool call status: {status!r}")
        return cls(
            id=_require_str(payload, "id"),
            message_id=message_id,
            name=_require_str(payload, "name"),
            category=_require_choice(payload, "category", TOOL_CATEGORIES),
            risk_level=_require_choice(payload, "riskLevel", RISK_LEVELS),
            is_local=bool(payload.get("isLocal", False)),
            params=_params(payload),
            status=status,
            result=payload.get("result"),
            error_message=payload.get("errorMessage"),
        )


@dataclass
class ApprovalRequest:
    id: str
    message_id: str
    tool_name: str
    reason: str
    risk_level: str
    policy_source: str
    expires_at: datetime
    params: dict[str, Any] = field(default_factory=dict)
    status: str = "pending"

    @property
    def is_terminal(self) -> bool:
        return self.status in APPROVAL_TERMINAL_STATUSES

    def transition(self, status: str) -> bool:
        """Apply a terminal status. Only a pending approval can move; returns False otherwise."""
        if status not in APPROVAL_TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal approval status: {status!r}")
        if self.is_terminal:
            return False
        self.status = status
        return True

    def remaining_seconds(self, now: datetime | None = None) -> float:
        now = now or utc_now()
        return max(0.0, (self.expires_at - now).total_seconds())

    def is_locally_expired(self, now: datetime | None = None) -> bool:
        return self.status == "pending" and self.remaining_seconds(now) <= 0

    @classmethod
    def from_wire(cls, payload: dict[str, Any], message_id: str) -> ApprovalRequest:
        status = payload.get("status", "pending")
        if status != "pending" and status not in APPROVAL_TERMINAL_STATUSES:
            raise ValueError(f"Invalid approval status: {status!r}")
        return cls(
            id=_require_str(payload, "id"),
            message_id=message_id,
            tool_name=_require_str(payload, "toolName"),
            reason=str(payload.get("reason", "")),
            risk_level=_require_choice(payload, "riskLevel", APPROVAL_RISK_LEVELS),
            policy_source=str(payload.get("policySource", "")),
            expires_at=parse_timestamp(payload.get("expiresAt")),
            params=_params(payload),
            status=status,
        )


@dataclass
class Message:
    id: str
    session_id: str
    role: str
    content: str = ""
    status: str = "sent"
    created_at: datetime = field(default_factory=utc_now)
    agent_id: str | None = None
    agent_role: str | None = None
    agent_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    approval: ApprovalRequest | None = None
    error_kind: str | None = None
    error_text: str | None = None
    optimistic: bool = False

    @property
    def is_open(self) -> bool:
        return self.status == "streaming"

    @property
    def retryable(self) -> bool:
        return self.status == "error" and self.error_kind != ERROR_KIND_CANCELLED

    def find_tool_call(self, tool_call_id: str) -> ToolCall | None:
        return next((tc for tc in self.tool_calls if tc.id == tool_call_id), None)

    def fail(self, kind: str, text: str | None = None) -> None:
        self.status = "error"
        self.error_kind = kind
        self.error_text = text

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> Message:
        message_id = _require_str(payload, "id")
        status = payload.get("status", "sent")
        if status not in MESSAGE_STATUSES:
            raise ValueError(f"Invalid message status: {status!r}")
        message = cls(
            id=message_id,
            session_id=_require_str(payload, "sessionId"),
            role=_require_choice(payload, "role", ROLES),
            content=str(payload.get("content", "")),
            status=status,
            created_at=parse_timestamp(payload["createdAt"]) if payload.get("createdAt") else utc_now(),
            agent_id=payload.get("agentId"),
            agent_role=payload.get("agentRole"),
            agent_name=payload.get("agentName"),
        )
        message.tool_calls = [ToolCall.from_wire(tc, message_id) for tc in payload.get("toolCalls") or []]
        if payload.get("approvalRequest"):
            message.approval = ApprovalRequest.from_wire(payload["approvalRequest"], message_id)
        return message


@dataclass(frozen=True)
class Session:
    id: str
    title: str
    workspace_id: str
    status: str
    message_count: int
    created_at: datetime
    last_message_at: datetime | None = None

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> Session:
        status = payload.get("status", "active")
        if status not in {"active", "archived"}:
            raise ValueError(f"Invalid session status: {status!r}")
        last = payload.get("lastMessageAt")
        return cls(
            id=_require_str(payload, "id"),
            title=str(payload.get("title", "")),
            workspace_id=str(payload.get("workspaceId", "")),
            status=status,
            message_count=int(payload.get("messageCount", 0)),
            created_at=parse_timestamp(payload["createdAt"]) if payload.get("createdAt") else utc_now(),
            last_message_at=parse_timestamp(last) if last else None,
        )
