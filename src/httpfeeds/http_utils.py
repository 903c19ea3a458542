from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping


DEFAULT_USER_AGENT = "http-feeds-client/0"


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    url: str
    headers: Mapping[str, str]
    body: bytes
    reason: str = ""

    def header(self, name: str) -> str | None:
        lname = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lname:
                return v
        return None

    def content_length(self) -> int | None:
        v = self.header("Content-Length")
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class HttpClient:
    """
    轻量 HTTP 客户端（仅依赖标准库），供 Fetcher 发起 GET。

    策略：
    - 每次调用只发一次请求，不做重试（重试策略属于订阅循环）
    - 非 2xx 响应不抛异常，原样返回 HttpResponse，由调用方判定
    - 实例无可变状态，可被多个订阅并发共享
    """

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        verify_ssl: bool = True,
    ) -> None:
        self._user_agent = user_agent
        self._ssl_context = ssl.create_default_context() if verify_ssl else ssl._create_unverified_context()

    def get(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> HttpResponse:
        """
        发起一次 GET。

        timeout_seconds 为 socket 级超时（连接与每次读取），None 表示不限制。
        网络错误（URLError/TimeoutError/OSError 等）直接向上抛出。
        """
        request_headers = {"User-Agent": self._user_agent}
        if headers:
            request_headers.update(dict(headers))

        req = urllib.request.Request(url=url, headers=request_headers, method="GET")
        kwargs: dict[str, Any] = {"context": self._ssl_context}
        if timeout_seconds is not None:
            kwargs["timeout"] = timeout_seconds
        try:
            with urllib.request.urlopen(req, **kwargs) as resp:  # noqa: S310
                return HttpResponse(
                    status=getattr(resp, "status", 200),
                    url=resp.geturl(),
                    headers={k: v for k, v in resp.headers.items()},
                    body=resp.read(),
                    reason=getattr(resp, "reason", "") or "",
                )
        except urllib.error.HTTPError as e:
            try:
                resp_headers = {k: v for k, v in (e.headers or {}).items()}
                body = e.read() if e.fp is not None else b""
            finally:
                e.close()
            return HttpResponse(
                status=e.code,
                url=e.geturl() or url,
                headers=resp_headers,
                body=body,
                reason=str(e.reason or ""),
            )


def with_query_params(url: str, params: Mapping[str, str | None]) -> str:
    """
    合并 query 参数；空串值保留（例如 lastEventId=），值为 None 的参数忽略。

    只替换 params 中出现的 key；其余已有参数（包括重复的 key，如 type=a&type=b）按原顺序保留。
    """
    parsed = urllib.parse.urlparse(url)
    updates = {k: v for k, v in params.items() if v is not None}
    pairs = [
        (k, v)
        for k, v in urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
        if k not in updates
    ]
    pairs.extend(updates.items())
    new_query = urllib.parse.urlencode(pairs)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))
