from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.parse
from dataclasses import dataclass, field

from .cancel import CancelToken
from .errors import Cancelled, InvalidEndpoint, MalformedResponse, ServerError, TransportError
from .http_utils import HttpClient, HttpResponse, with_query_params
from .models import Event


logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

_TRANSPORT_ERRORS = (urllib.error.URLError, http.client.HTTPException, OSError)


def parse_endpoint(endpoint: str) -> urllib.parse.ParseResult:
    """
    校验订阅端点：必须是带 host 的 http/https URL，否则抛 InvalidEndpoint。
    """
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise InvalidEndpoint("endpoint must be a non-empty URL")
    try:
        parsed = urllib.parse.urlparse(endpoint.strip())
        _ = parsed.port
    except ValueError as e:
        raise InvalidEndpoint(f"invalid endpoint {endpoint!r}: {e}") from e
    if parsed.scheme not in ("http", "https"):
        raise InvalidEndpoint(f"invalid endpoint {endpoint!r}: scheme must be http or https")
    if not parsed.hostname:
        raise InvalidEndpoint(f"invalid endpoint {endpoint!r}: missing host")
    return parsed


def decode_events(body: bytes) -> list[Event]:
    """
    将 200 响应体完整解码为有序事件列表；结构不符抛 MalformedResponse。

    body 为 JSON null 时视为空批次。
    """
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedResponse(f"response body is not valid JSON: {e}") from e
    if data is None:
        return []
    if not isinstance(data, list):
        raise MalformedResponse(f"expected JSON array of events, got {type(data).__name__}")

    events: list[Event] = []
    for i, item in enumerate(data):
        try:
            events.append(Event.from_json_dict(item))
        except ValueError as e:
            raise MalformedResponse(f"invalid event at index {i}: {e}") from e
    return events


@dataclass(slots=True)
class Fetcher:
    """
    执行一次完整的拉取：构造 query -> 单次 GET -> 校验状态码 -> 解码事件数组。

    Fetcher 内部不做任何重试。
    timeout_seconds > 0 时启用长轮询，以毫秒整数写入 query 参数 timeout；
    request_timeout_seconds 是单次请求的上限（0 表示只受 token 截止时间约束）；
    长轮询时它必须覆盖服务端的 hold 时间，否则请求会在长轮询窗口结束前被中止。
    """

    http: HttpClient = field(default_factory=HttpClient)
    timeout_seconds: float = 0.0
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    def build_url(self, endpoint: str, last_event_id: str) -> str:
        parse_endpoint(endpoint)
        params: dict[str, str | None] = {"lastEventId": last_event_id or ""}
        if self.timeout_seconds > 0:
            params["timeout"] = str(int(round(self.timeout_seconds * 1_000_000)) // 1000)
        return with_query_params(endpoint, params)

    def _request_timeout(self, token: CancelToken) -> float | None:
        timeout = self.request_timeout_seconds if self.request_timeout_seconds > 0 else None
        remaining = token.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        return timeout

    def fetch(self, endpoint: str, last_event_id: str, token: CancelToken) -> list[Event]:
        url = self.build_url(endpoint, last_event_id)
        timeout = self._request_timeout(token)
        logger.debug("fetch: url=%s request_timeout=%s", url, timeout)

        try:
            resp = token.call(
                self.http.get,
                url,
                headers={"Accept": "application/json"},
                timeout_seconds=timeout,
                call_timeout=timeout,
            )
        except Cancelled as e:
            raise TransportError(f"request aborted: {e}") from e
        except TimeoutError as e:
            raise TransportError(f"request timed out after {timeout}s: {url}") from e
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"request failed: {type(e).__name__}: {e}") from e

        return self._handle_response(resp)

    def _handle_response(self, resp: HttpResponse) -> list[Event]:
        if resp.status != 200:
            length = resp.content_length()
            body = resp.body if (length is not None and length > 0) else None
            raise ServerError(resp.status, resp.reason, body)
        return decode_events(resp.body)
