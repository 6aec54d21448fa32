from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = "http://127.0.0.1:8080"
    ws_path: str = "/v1/ws"
    join_timeout_s: float = 10.0
    history_timeout_s: float = 10.0
    send_timeout_s: float = 10.0
    connect_attempts: int = 5
    backoff_initial_s: float = 0.5
    backoff_max_s: float = 8.0
    heartbeat_s: float = 30.0
    history_limit: int = 500

    @property
    def ws_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.ws_path}"

    def backoff_delays(self) -> list[float]:
        """Delays slept between consecutive connect attempts."""

        delays: list[float] = []
        delay = self.backoff_initial_s
        for _ in range(max(self.connect_attempts - 1, 0)):
            delays.append(min(delay, self.backoff_max_s))
            delay *= 2
        return delays


def _parse_non_negative_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 1:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_client_config_from_env() -> ClientConfig:
    defaults = ClientConfig()
    return ClientConfig(
        base_url=os.environ.get("CHAT_BASE_URL") or defaults.base_url,
        ws_path=os.environ.get("CHAT_WS_PATH") or defaults.ws_path,
        join_timeout_s=_parse_non_negative_float("CHAT_JOIN_TIMEOUT_S", defaults.join_timeout_s),
        history_timeout_s=_parse_non_negative_float("CHAT_HISTORY_TIMEOUT_S", defaults.history_timeout_s),
        send_timeout_s=_parse_non_negative_float("CHAT_SEND_TIMEOUT_S", defaults.send_timeout_s),
        connect_attempts=_parse_positive_int("CHAT_CONNECT_ATTEMPTS", defaults.connect_attempts),
        backoff_initial_s=_parse_non_negative_float("CHAT_BACKOFF_INITIAL_S", defaults.backoff_initial_s),
        backoff_max_s=_parse_non_negative_float("CHAT_BACKOFF_MAX_S", defaults.backoff_max_s),
        heartbeat_s=_parse_non_negative_float("CHAT_HEARTBEAT_S", defaults.heartbeat_s),
        history_limit=_parse_positive_int("CHAT_HISTORY_LIMIT", defaults.history_limit),
    )
