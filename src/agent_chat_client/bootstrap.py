from __future__ import annotations

from dataclasses import dataclass

from agent_chat_client.api_client import ChatApiClient
from agent_chat_client.app_config import AppConfig, RuntimeEnv
from agent_chat_client.chat_session import ChatSession
from agent_chat_client.console_app import ChatConsole
from agent_chat_client.demo_backend import DemoBackend
from agent_chat_client.logging_config import setup_logging

DEMO_BASE_URL = "http://demo.local/api"
DEMO_SESSION_ID = "demo-session"


@dataclass
class AppRuntime:
    console: ChatConsole
    session: ChatSession
    client: ChatApiClient
    demo_backend: DemoBackend | None
    log_descriptions: list[str]

    async def aclose(self) -> None:
        self.console.close()
        await self.session.close()
        await self.client.aclose()


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    demo_backend: DemoBackend | None = None
    base_url = app.base_url
    session_id = app.session_id
    if app.demo:
        demo_backend = DemoBackend(pacing=app.demo_pacing)
        base_url = DEMO_BASE_URL
        session_id = session_id or DEMO_SESSION_ID
        demo_backend.seed_session(session_id, "Demo session")
    if not session_id:
        raise ValueError("SessionId is required unless Demo is enabled")

    client = ChatApiClient(
        base_url,
        token=env.api_token,
        timeout=app.request_timeout_seconds,
        approve_route=app.approve_route,
        reject_route=app.reject_route,
        history_retry_attempts=app.history_retry_attempts,
        transport=demo_backend.transport() if demo_backend else None,
    )
    session = ChatSession(
        session_id,
        client,
        countdown_tick_seconds=app.countdown_tick_seconds,
        reconcile_window_seconds=app.reconcile_window_seconds,
    )
    return AppRuntime(
        console=ChatConsole(session),
        session=session,
        client=client,
        demo_backend=demo_backend,
        log_descriptions=log_descriptions,
    )
