from __future__ import annotations


class FeedError(RuntimeError):
    """
    所有订阅相关错误的基类。

    分类：
    - InvalidEndpoint：URL 非法，订阅无法启动（致命）
    - TransportError / ServerError / MalformedResponse：单次拉取失败，由订阅循环吞掉并重试
    - Cancelled：取消信号触发，终止订阅循环
    """


class InvalidEndpoint(FeedError, ValueError):
    pass


class TransportError(FeedError):
    """网络层失败：连接失败、请求超时、请求被取消。"""


class ServerError(FeedError):
    def __init__(self, status: int, reason: str = "", body: bytes | None = None) -> None:
        self.status = status
        self.reason = reason
        self.body = body
        status_line = f"{status} {reason}".strip()
        if body:
            text = body.decode("utf-8", errors="replace").strip()
            msg = f"got error response from server. status: {status_line}, body: {text}"
        else:
            msg = f"got error response from server. status: {status_line}"
        super().__init__(msg)


class MalformedResponse(FeedError):
    """200 响应体不是合法的事件 JSON 数组。"""


class Cancelled(FeedError):
    """取消信号已触发；__cause__ 为取消原因（例如 DeadlineExceeded）。"""


class DeadlineExceeded(TimeoutError):
    """CancelToken 的截止时间已到。"""
