from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta
from itertools import count
from typing import Any

import httpx
from loguru import logger

from agent_chat_client.events import encode_frame
from agent_chat_client.models import format_timestamp, utc_now

_STREAM_PATH = re.compile(r"/sessions/(?P<session_id>[^/]+)/stream$")
_MESSAGES_PATH = re.compile(r"/sessions/(?P<session_id>[^/]+)/messages$")
_SESSION_PATH = re.compile(r"/sessions/(?P<session_id>[^/]+)$")
_DECISION_PATH = re.compile(r"/approvals/(?P<approval_id>[^/]+)/(?P<decision>approve|reject)$")

Frame = tuple[int, dict[str, Any]]


def _text_frames(message_id: str, text: str, chunk_size: int, delay_ms: int = 25) -> list[Frame]:
    return [
        (delay_ms, {"type": "text-delta", "messageId": message_id, "delta": text[i : i + chunk_size]})
        for i in range(0, len(text), chunk_size)
    ]


def scripted_turn(user_content: str, *, now: datetime, suffix: str, chunk_size: int = 4) -> list[Frame]:
    """The fixed multi-agent reply: coordinator, frontend tool work, then a git push approval.

    Each frame is paired with the delay in milliseconds to wait before sending it.
    """
    coord_id = f"stream-coord-{suffix}"
    front_id = f"stream-front-{suffix}"
    approve_id = f"stream-approve-{suffix}"
    read_id = f"tool-read-{suffix}"
    term_id = f"tool-term-{suffix}"

    frames: list[Frame] = [
        (400, {"type": "agent-switch", "agentId": "agent-coordinator", "agentRole": "coordinator", "agentName": "协调者"}),
        (0, {"type": "message-start", "messageId": coord_id, "agentId": "agent-coordinator"}),
    ]
    frames += _text_frames(
        coord_id,
        f"收到你的请求：\"{user_content}\"\n\n我来协调团队分工处理这个任务。\n\n"
        "**分工安排：**\n- 前端工程师：UI 实现\n- 后端工程师：API 设计\n- 测试工程师：用例编写",
        chunk_size,
    )
    frames += [
        (0, {"type": "message-end", "messageId": coord_id}),
        (600, {"type": "agent-switch", "agentId": "agent-frontend", "agentRole": "frontend", "agentName": "前端工程师"}),
        (0, {"type": "message-start", "messageId": front_id, "agentId": "agent-frontend"}),
    ]
    frames += _text_frames(front_id, "我先读取现有代码，了解项目结构。\n\n", chunk_size)
    frames += [
        (0, {
            "type": "tool-call",
            "messageId": front_id,
            "toolCall": {
                "id": read_id,
                "name": "file_read",
                "category": "file",
                "riskLevel": "low",
                "isLocal": True,
                "params": {"path": "src/components/TaskCard.tsx"},
                "status": "running",
            },
        }),
        (800, {
            "type": "tool-result",
            "messageId": front_id,
            "toolCallId": read_id,
            "result": "// TaskCard.tsx - 87 lines\nexport function TaskCard({ task }: Props) { ... }",
            "status": "success",
        }),
    ]
    frames += _text_frames(
        front_id, "\n代码读取完成。`TaskCard` 组件结构清晰，我将在此基础上新增优先级筛选功能。", chunk_size
    )
    frames += [
        (0, {
            "type": "tool-call",
            "messageId": front_id,
            "toolCall": {
                "id": term_id,
                "name": "bash_execute",
                "category": "terminal",
                "riskLevel": "medium",
                "isLocal": True,
                "params": {"command": "npm run build", "timeout": 30000},
                "status": "running",
            },
        }),
        (1200, {
            "type": "tool-result",
            "messageId": front_id,
            "toolCallId": term_id,
            "result": "Build succeeded in 4.2s",
            "status": "success",
        }),
    ]
    frames += _text_frames(front_id, "\n构建通过，准备提交代码。", chunk_size)
    frames += [
        (0, {"type": "message-end", "messageId": front_id}),
        (400, {"type": "message-start", "messageId": approve_id, "agentId": "agent-frontend"}),
        (0, {
            "type": "approval-request",
            "messageId": approve_id,
            "approval": {
                "id": f"approval-{suffix}",
                "toolName": "git_push",
                "reason": "即将推送代码到远程仓库 origin/main 分支，影响线上环境",
                "riskLevel": "high",
                "policySource": "项目策略：高风险操作需审批",
                "params": {"remote": "origin", "branch": "main", "force": False},
                "expiresAt": format_timestamp(now + timedelta(minutes=30)),
                "status": "pending",
            },
        }),
        (0, {"type": "message-end", "messageId": approve_id}),
        (200, {"type": "done"}),
    ]
    return frames


def _json(status_code: int, payload: Any) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


def _error(status_code: int, code: str, message: str) -> httpx.Response:
    return _json(status_code, {"code": code, "message": message})


class DemoBackend:
    """In-process stand-in for the turn backend, served through httpx.MockTransport."""

    def __init__(
        self,
        *,
        pacing: float = 1.0,
        chunk_size: int = 4,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._pacing = max(0.0, pacing)
        self._chunk_size = max(1, chunk_size)
        self._clock = clock
        self._ids = count(1)
        self._sessions: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._approvals: dict[str, dict[str, Any]] = {}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def seed_session(self, session_id: str, title: str = "", *, messages: list[dict[str, Any]] | None = None) -> None:
        now = format_timestamp(self._clock())
        self._sessions[session_id] = {
            "id": session_id,
            "title": title or session_id,
            "workspaceId": "ws-demo",
            "status": "active",
            "messageCount": len(messages or []),
            "createdAt": now,
        }
        self._messages[session_id] = list(messages or [])

    def approval_status(self, approval_id: str) -> str | None:
        approval = self._approvals.get(approval_id)
        return approval["status"] if approval else None

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and (match := _STREAM_PATH.search(path)):
            body = json.loads(request.content or b"{}")
            return self._stream(match["session_id"], str(body.get("content", "")))
        if request.method == "GET" and (match := _MESSAGES_PATH.search(path)):
            return _json(200, {"data": list(self._messages.get(match["session_id"], []))})
        if request.method == "GET" and (match := _SESSION_PATH.search(path)):
            session = self._sessions.get(match["session_id"])
            if session is None:
                return _error(404, "NOT_FOUND", f"Session not found: {match['session_id']}")
            return _json(200, {"data": session})
        if request.method == "POST" and (match := _DECISION_PATH.search(path)):
            return self._decide(match["approval_id"], match["decision"])
        return _error(404, "NOT_FOUND", f"No route for {request.method} {path}")

    def _stream(self, session_id: str, content: str) -> httpx.Response:
        if session_id not in self._sessions:
            self.seed_session(session_id)
        suffix = str(next(self._ids))
        frames = scripted_turn(content, now=self._clock(), suffix=suffix, chunk_size=self._chunk_size)
        logger.debug(f"Demo backend streaming {len(frames)} frame(s) for session {session_id}")
        return httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"},
            content=self._body(session_id, content, frames),
        )

    async def _body(self, session_id: str, content: str, frames: list[Frame]) -> AsyncIterator[bytes]:
        assistant: dict[str, dict[str, Any]] = {}
        for delay_ms, frame in frames:
            if delay_ms and self._pacing:
                await asyncio.sleep(delay_ms / 1000 * self._pacing)
            self._record(session_id, frame, assistant)
            yield encode_frame(frame)
        self._persist(session_id, content, assistant)

    def _record(self, session_id: str, frame: dict[str, Any], assistant: dict[str, dict[str, Any]]) -> None:
        kind = frame["type"]
        if kind == "message-start":
            assistant[frame["messageId"]] = {
                "id": frame["messageId"],
                "sessionId": session_id,
                "role": "assistant",
                "agentId": frame.get("agentId"),
                "content": "",
                "status": "sent",
                "createdAt": format_timestamp(self._clock()),
            }
        elif kind == "text-delta":
            assistant[frame["messageId"]]["content"] += frame["delta"]
        elif kind == "tool-call":
            assistant[frame["messageId"]].setdefault("toolCalls", []).append(dict(frame["toolCall"]))
        elif kind == "tool-result":
            for call in assistant[frame["messageId"]].get("toolCalls", []):
                if call["id"] == frame["toolCallId"]:
                    call["status"] = frame["status"]
                    call["result" if frame["status"] == "success" else "errorMessage"] = frame["result"]
        elif kind == "approval-request":
            approval = dict(frame["approval"])
            self._approvals[approval["id"]] = approval
            assistant[frame["messageId"]]["approvalRequest"] = approval

    def _persist(self, session_id: str, content: str, assistant: dict[str, dict[str, Any]]) -> None:
        messages = self._messages.setdefault(session_id, [])
        messages.append(
            {
                "id": f"msg-user-{next(self._ids)}",
                "sessionId": session_id,
                "role": "user",
                "content": content,
                "status": "sent",
                "createdAt": format_timestamp(self._clock()),
            }
        )
        messages.extend(assistant.values())
        session = self._sessions[session_id]
        session["messageCount"] = len(messages)
        session["lastMessageAt"] = format_timestamp(self._clock())

    def _decide(self, approval_id: str, decision: str) -> httpx.Response:
        approval = self._approvals.get(approval_id)
        if approval is None:
            return _error(404, "NOT_FOUND", f"Approval not found: {approval_id}")
        if approval["status"] != "pending":
            return _error(409, "APPROVAL_RESOLVED", f"Approval already {approval['status']}")
        expires_at = datetime.fromisoformat(approval["expiresAt"])
        if self._clock() >= expires_at:
            approval["status"] = "expired"
            return _error(410, "APPROVAL_EXPIRED", "Approval window has closed")
        approval["status"] = "approved" if decision == "approve" else "rejected"
        return _json(200, {"data": {"id": approval_id, "status": approval["status"]}})
