from __future__ import annotations

import logging
import queue
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

from .cancel import CancelToken
from .errors import Cancelled, FeedError
from .fetcher import DEFAULT_REQUEST_TIMEOUT_SECONDS, Fetcher, parse_endpoint
from .http_utils import HttpClient
from .models import Event


logger = logging.getLogger(__name__)

DEFAULT_POLL_DELAY_SECONDS = 5.0

_DELIVERY_SLICE_SECONDS = 0.05


class SubscriptionState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DELIVERING = "delivering"
    BACKOFF = "backoff"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Subscription:
    """
    单个订阅的运行时状态。

    last_event_id 即 cursor：
    - 初始值来自调用方（空串表示从头开始）
    - 只由订阅循环修改，在事件交付给消费方之前更新为该事件的 id
    - 拉取失败时保持不变，从不回退
    """

    endpoint: str
    last_event_id: str = ""
    state: SubscriptionState = SubscriptionState.IDLE
    cycles: int = 0
    failures: int = 0
    events_delivered: int = 0
    last_error: str | None = None


class QueueSink(Protocol):
    def put(self, item: Any, block: bool = True, timeout: float | None = None) -> None: ...


EventSink = Callable[[Event], None] | QueueSink
ErrorHook = Callable[[Subscription, FeedError], None]


class _Ticker:
    """
    固定节奏的轮询计时器：错过的 tick 合并为一次立即触发；reset() 让下一次 tick 从现在起算。
    """

    def __init__(self, period_seconds: float) -> None:
        self._period = period_seconds
        self._next = time.monotonic() + period_seconds

    def reset(self) -> None:
        self._next = time.monotonic() + self._period

    def trigger(self) -> None:
        self._next = time.monotonic()

    def wait(self, token: CancelToken) -> bool:
        """等待下一次 tick；token 先触发时返回 True。"""
        while True:
            delay = self._next - time.monotonic()
            if delay <= 0:
                break
            if token.wait(delay):
                return True
        now = time.monotonic()
        missed = int((now - self._next) // self._period) + 1
        self._next += missed * self._period
        return token.cancelled


def _deliver(sink: EventSink, event: Event, token: CancelToken) -> None:
    put = getattr(sink, "put", None)
    if put is None:
        sink(event)  # type: ignore[operator]
        return
    while True:
        token.raise_if_cancelled()
        try:
            put(event, timeout=_DELIVERY_SLICE_SECONDS)
            return
        except queue.Full:
            continue


class FeedClient:
    """
    HTTP feed 订阅客户端。

    轮询节奏：
    - 订阅开始时立即发起第一次请求，不等第一个 poll delay
    - 之后按 poll_delay_seconds 的固定节奏拉取
    - 拉取失败：cursor 不变，计时器重置，一个完整 poll delay 后重试（错误不向上抛）
    - 简单轮询（timeout_seconds == 0）下空批次同样重置计时器
    - 长轮询下带数据的批次之后立即发起下一次请求（节奏由服务端 hold 时间决定）；
      空批次则等待下一次 tick，避免不支持长轮询的服务端导致空转
    """

    def __init__(
        self,
        *,
        poll_delay_seconds: float = DEFAULT_POLL_DELAY_SECONDS,
        timeout_seconds: float = 0.0,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        http: HttpClient | None = None,
        on_error: ErrorHook | None = None,
    ) -> None:
        self.poll_delay_seconds = poll_delay_seconds if poll_delay_seconds > 0 else DEFAULT_POLL_DELAY_SECONDS
        self.timeout_seconds = max(0.0, timeout_seconds)
        self.request_timeout_seconds = (
            request_timeout_seconds if request_timeout_seconds > 0 else DEFAULT_REQUEST_TIMEOUT_SECONDS
        )
        self.fetcher = Fetcher(
            http=http or HttpClient(),
            timeout_seconds=self.timeout_seconds,
            request_timeout_seconds=self.request_timeout_seconds,
        )
        self.on_error = on_error

    def open(self, endpoint: str, last_event_id: str = "") -> Subscription:
        parse_endpoint(endpoint)
        return Subscription(endpoint=endpoint, last_event_id=last_event_id or "")

    def subscribe(
        self,
        endpoint: str,
        last_event_id: str,
        sink: EventSink,
        token: CancelToken,
    ) -> None:
        """
        订阅 endpoint，直到 token 触发。

        - endpoint 非法：立即抛 InvalidEndpoint，不启动循环
        - token 被无 cause 地 cancel()：返回 None
        - token 截止时间到或带 cause 取消：抛 Cancelled（__cause__ 为原因）
        """
        return self.run(self.open(endpoint, last_event_id), sink, token)

    def run(self, subscription: Subscription, sink: EventSink, token: CancelToken) -> None:
        ticker = _Ticker(self.poll_delay_seconds)
        logger.info(
            "subscription start: endpoint=%s last_event_id=%r poll_delay=%.3fs timeout=%.3fs request_timeout=%.3fs",
            subscription.endpoint,
            subscription.last_event_id,
            self.poll_delay_seconds,
            self.timeout_seconds,
            self.request_timeout_seconds,
        )
        try:
            if not token.cancelled:
                self._cycle(subscription, sink, ticker, token)
            while not ticker.wait(token):
                self._cycle(subscription, sink, ticker, token)
        except Cancelled:
            pass

        subscription.state = SubscriptionState.CANCELLED
        logger.info(
            "subscription cancelled: endpoint=%s last_event_id=%r cycles=%d failures=%d events_delivered=%d",
            subscription.endpoint,
            subscription.last_event_id,
            subscription.cycles,
            subscription.failures,
            subscription.events_delivered,
        )
        if token.cause is None:
            return None
        raise token.error()

    def _cycle(self, subscription: Subscription, sink: EventSink, ticker: _Ticker, token: CancelToken) -> None:
        subscription.cycles += 1
        subscription.state = SubscriptionState.FETCHING
        cursor = subscription.last_event_id

        try:
            events = self.fetcher.fetch(subscription.endpoint, cursor, token)
        except FeedError as e:
            if token.cancelled:
                raise token.error() from e
            self._record_failure(subscription, e)
            ticker.reset()
            return

        logger.debug(
            "fetched: endpoint=%s cursor=%r events=%d",
            subscription.endpoint,
            cursor,
            len(events),
        )
        subscription.state = SubscriptionState.DELIVERING
        for event in events:
            token.raise_if_cancelled()
            subscription.last_event_id = event.id
            _deliver(sink, event, token)
            subscription.events_delivered += 1

        if self.timeout_seconds <= 0 and not events:
            ticker.reset()
        elif self.timeout_seconds > 0 and events:
            ticker.trigger()
        subscription.state = SubscriptionState.IDLE

    def _record_failure(self, subscription: Subscription, error: FeedError) -> None:
        subscription.state = SubscriptionState.BACKOFF
        subscription.failures += 1
        subscription.last_error = f"{type(error).__name__}: {error}"
        logger.warning(
            "fetch failed, retrying in %.3fs: endpoint=%s cursor=%r failures=%d error=%s",
            self.poll_delay_seconds,
            subscription.endpoint,
            subscription.last_event_id,
            subscription.failures,
            subscription.last_error,
        )
        if self.on_error is None:
            return
        try:
            self.on_error(subscription, error)
        except Exception:  # noqa: BLE001
            logger.exception("on_error hook failed: endpoint=%s", subscription.endpoint)
