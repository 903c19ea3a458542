from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Mapping

from .fetcher import DEFAULT_REQUEST_TIMEOUT_SECONDS
from .subscription import DEFAULT_POLL_DELAY_SECONDS, ErrorHook, FeedClient


logger = logging.getLogger(__name__)

ENV_PREFIX = "HTTPFEEDS_"


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"Expected object at {where}, got {type(value)}")
    return value


def _to_int(v: Any, default: int) -> int:
    if v is None or isinstance(v, bool):
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    return _to_int(d.get(key, default), default)


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """
    订阅客户端配置。

    poll_delay_seconds:
      - 两次拉取之间的间隔（简单轮询节奏；失败后的重试间隔）
    timeout_seconds:
      - 长轮询超时，0 表示不使用长轮询；以毫秒写入 query 参数 timeout
    request_timeout_seconds:
      - 单次 HTTP 请求上限；长轮询时需大于 timeout_seconds
    endpoint / last_event_id:
      - 订阅端点与起始 cursor（CLI 参数可覆盖）
    """

    poll_delay_seconds: float = DEFAULT_POLL_DELAY_SECONDS
    timeout_seconds: float = 0.0
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    endpoint: str | None = None
    last_event_id: str = ""

    def with_overrides(
        self,
        *,
        poll_delay_ms: int | None = None,
        timeout_ms: int | None = None,
        request_timeout_ms: int | None = None,
        endpoint: str | None = None,
        last_event_id: str | None = None,
    ) -> ClientConfig:
        cfg = self
        if poll_delay_ms is not None and poll_delay_ms > 0:
            cfg = replace(cfg, poll_delay_seconds=poll_delay_ms / 1000.0)
        if timeout_ms is not None and timeout_ms >= 0:
            cfg = replace(cfg, timeout_seconds=timeout_ms / 1000.0)
        if request_timeout_ms is not None and request_timeout_ms > 0:
            cfg = replace(cfg, request_timeout_seconds=request_timeout_ms / 1000.0)
        if endpoint:
            cfg = replace(cfg, endpoint=endpoint)
        if last_event_id is not None:
            cfg = replace(cfg, last_event_id=last_event_id)
        return cfg


def load_config(config_path: str | None = None, env: Mapping[str, str] | None = None) -> ClientConfig:
    """
    约定：使用 JSON 作为配置落地形式，环境变量优先级高于文件。

    JSON 顶层结构（示意，时间均为毫秒）：
    {
      "endpoint": "http://localhost:8080/inventory",
      "last_event_id": "",
      "poll_delay_ms": 5000,
      "timeout_ms": 0,
      "request_timeout_ms": 30000
    }

    环境变量：HTTPFEEDS_ENDPOINT / HTTPFEEDS_LAST_EVENT_ID / HTTPFEEDS_POLL_DELAY_MS /
    HTTPFEEDS_TIMEOUT_MS / HTTPFEEDS_REQUEST_TIMEOUT_MS
    """
    env = os.environ if env is None else env

    root: Mapping[str, Any] = {}
    if config_path:
        with open(config_path, "rb") as f:
            raw = json.loads(f.read().decode("utf-8"))
        root = _require_dict(raw, where="$")

    cfg = ClientConfig().with_overrides(
        poll_delay_ms=_get_int(root, "poll_delay_ms", int(DEFAULT_POLL_DELAY_SECONDS * 1000)),
        timeout_ms=_get_int(root, "timeout_ms", 0),
        request_timeout_ms=_get_int(root, "request_timeout_ms", int(DEFAULT_REQUEST_TIMEOUT_SECONDS * 1000)),
        endpoint=_get_str(root, "endpoint"),
        last_event_id=_get_str(root, "last_event_id"),
    )

    return cfg.with_overrides(
        poll_delay_ms=_to_int(env.get(ENV_PREFIX + "POLL_DELAY_MS"), -1),
        timeout_ms=_to_int(env.get(ENV_PREFIX + "TIMEOUT_MS"), -1),
        request_timeout_ms=_to_int(env.get(ENV_PREFIX + "REQUEST_TIMEOUT_MS"), -1),
        endpoint=env.get(ENV_PREFIX + "ENDPOINT"),
        last_event_id=env.get(ENV_PREFIX + "LAST_EVENT_ID"),
    )


def build_client(config: ClientConfig, *, on_error: ErrorHook | None = None) -> FeedClient:
    """
    根据配置装配 FeedClient。
    """
    if config.timeout_seconds > 0 and config.request_timeout_seconds <= config.timeout_seconds:
        logger.warning(
            "request timeout %.3fs does not exceed long-poll timeout %.3fs; requests may be aborted before the server responds",
            config.request_timeout_seconds,
            config.timeout_seconds,
        )
    return FeedClient(
        poll_delay_seconds=config.poll_delay_seconds,
        timeout_seconds=config.timeout_seconds,
        request_timeout_seconds=config.request_timeout_seconds,
        on_error=on_error,
    )
