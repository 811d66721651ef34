from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from agent_chat_client.api_client import DEFAULT_APPROVE_ROUTE, DEFAULT_REJECT_ROUTE

TOKEN_ENV_VAR = "AGENT_CHAT_API_TOKEN"


@dataclass
class RuntimeEnv:
    api_token: str | None


@dataclass
class AppConfig:
    base_url: str
    session_id: str | None
    request_timeout_seconds: float
    approve_route: str
    reject_route: str
    history_retry_attempts: int
    countdown_tick_seconds: float
    reconcile_window_seconds: float
    demo: bool
    demo_pacing: float
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        base_url=str(config.get("BaseUrl", "http://localhost:3000/api")).strip().rstrip("/"),
        session_id=str(config.get("SessionId", "")).strip() or None,
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 30.0)),
        approve_route=str(config.get("ApproveRoute", DEFAULT_APPROVE_ROUTE)),
        reject_route=str(config.get("RejectRoute", DEFAULT_REJECT_ROUTE)),
        history_retry_attempts=int(config.get("HistoryRetryAttempts", 3)),
        countdown_tick_seconds=float(config.get("CountdownTickSeconds", 1.0)),
        reconcile_window_seconds=float(config.get("ReconcileWindowSeconds", 120.0)),
        demo=_to_bool(config.get("Demo", False), default=False),
        demo_pacing=float(config.get("DemoPacing", 1.0)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(api_token=os.environ.get(TOKEN_ENV_VAR) or None)
