import json
import logging
import queue
import threading
import time
import urllib.error
import urllib.parse
from dataclasses import dataclass, field

import pytest

from feed_server import FeedReply
from httpfeeds.cancel import CancelToken
from httpfeeds.errors import Cancelled, DeadlineExceeded, InvalidEndpoint, ServerError
from httpfeeds.http_utils import HttpResponse
from httpfeeds.models import Event
from httpfeeds.subscription import FeedClient, Subscription, SubscriptionState


ENDPOINT = "http://feed.test/inventory"


def _ok(payload: list) -> HttpResponse:
    body = json.dumps(payload).encode("utf-8")
    return HttpResponse(status=200, url=ENDPOINT, headers={"Content-Length": str(len(body))}, body=body)


def _status(code: int, body: bytes = b"") -> HttpResponse:
    return HttpResponse(status=code, url=ENDPOINT, headers={"Content-Length": str(len(body))}, body=body)


@dataclass
class FakeHttp:
    """
    纯内存 HttpClient：
    - script 按调用顺序依次返回（元素为 HttpResponse 或要抛出的异常），用完后重复最后一个
    - by_cursor 若命中 lastEventId 则优先使用
    - 记录每次调用的 lastEventId 与时间戳
    """

    script: list = field(default_factory=list)
    by_cursor: dict[str, object] = field(default_factory=dict)
    cursors: list[str] = field(default_factory=list)
    times: list[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, url: str, *, headers=None, timeout_seconds=None) -> HttpResponse:  # noqa: ANN001, ARG002
        query = dict(urllib.parse.parse_qsl(urllib.parse.urlparse(url).query, keep_blank_values=True))
        cursor = query["lastEventId"]
        with self.lock:
            idx = len(self.cursors)
            self.cursors.append(cursor)
            self.times.append(time.monotonic())
        if cursor in self.by_cursor:
            outcome = self.by_cursor[cursor]
        else:
            outcome = self.script[min(idx, len(self.script) - 1)]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def calls(self) -> int:
        with self.lock:
            return len(self.cursors)


@dataclass
class _Run:
    thread: threading.Thread
    result: dict = field(default_factory=dict)

    def join(self, timeout: float = 5.0) -> None:
        self.thread.join(timeout)
        assert not self.thread.is_alive(), "subscription loop did not exit"


def _start(client: FeedClient, subscription: Subscription, sink, token: CancelToken) -> _Run:  # noqa: ANN001
    run = _Run(thread=threading.Thread(target=lambda: None))

    def _target() -> None:
        try:
            run.result["value"] = client.run(subscription, sink, token)
        except BaseException as e:  # noqa: BLE001
            run.result["error"] = e

    run.thread = threading.Thread(target=_target, daemon=True)
    run.thread.start()
    return run


def _take(q: queue.Queue, n: int, timeout: float = 3.0) -> list[str]:
    return [q.get(timeout=timeout).id for _ in range(n)]


def _wait_until(predicate, timeout: float = 3.0) -> None:  # noqa: ANN001
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


def test_fixed_response_repeats_endlessly(feed_server) -> None:  # noqa: ANN001
    """
    服务端无视 cursor 永远返回 1,2：客户端每个周期都会重复收到 1,2，进度由服务端决定。
    """
    server = feed_server(lambda _q: FeedReply(body='[{"id":"1"},{"id":"2"}]'))
    client = FeedClient(poll_delay_seconds=0.02)
    sub = client.open(server.url, "")
    events: queue.Queue = queue.Queue()
    token = CancelToken()
    run = _start(client, sub, events, token)

    assert _take(events, 6) == ["1", "2", "1", "2", "1", "2"]
    token.cancel()
    run.join()

    assert run.result == {"value": None}
    cursors = server.cursors()
    assert cursors[0] == ""
    assert set(cursors[1:]) == {"2"}


def test_cursor_advances_and_settles(feed_server) -> None:  # noqa: ANN001
    def handler(q: dict[str, str]) -> FeedReply:
        if q["lastEventId"] == "":
            return FeedReply(body='[{"id":"1"},{"id":"2"}]')
        if q["lastEventId"] == "2":
            return FeedReply(body='[{"id":"3"}]')
        return FeedReply(body="[]")

    server = feed_server(handler)
    client = FeedClient(poll_delay_seconds=0.02)
    sub = client.open(server.url)
    events: queue.Queue = queue.Queue()
    token = CancelToken()
    run = _start(client, sub, events, token)

    assert _take(events, 3) == ["1", "2", "3"]
    _wait_until(lambda: server.cursors().count("3") >= 3)
    token.cancel()
    run.join()

    assert events.empty()
    assert sub.last_event_id == "3"
    assert sub.events_delivered == 3
    assert sub.state is SubscriptionState.CANCELLED
    assert server.cursors()[:3] == ["", "2", "3"]


def test_server_error_is_retried_after_poll_delay(feed_server) -> None:  # noqa: ANN001
    calls = {"n": 0}

    def handler(_q: dict[str, str]) -> FeedReply:
        calls["n"] += 1
        if calls["n"] == 1:
            return FeedReply(status=500, body="restarting")
        return FeedReply(body='[{"id":"1"}]')

    server = feed_server(handler)
    client = FeedClient(poll_delay_seconds=0.3)
    sub = client.open(server.url)
    events: queue.Queue = queue.Queue()
    token = CancelToken()
    t0 = time.monotonic()
    run = _start(client, sub, events, token)

    assert _take(events, 1) == ["1"]
    assert time.monotonic() - t0 >= 0.25
    token.cancel()
    run.join()

    assert run.result == {"value": None}
    assert sub.failures >= 1
    assert sub.last_error is not None and "ServerError" in sub.last_error
    assert server.cursors()[:2] == ["", ""]


def test_long_polling_cycles_with_data_run_back_to_back(feed_server) -> None:  # noqa: ANN001
    """
    长轮询：服务端 hold timeout-90ms 后返回事件，带数据的周期之间不等待 poll delay。
    """

    def handler(q: dict[str, str]) -> FeedReply:
        hold = int(q["timeout"]) / 1000.0 - 0.09
        if q["lastEventId"] == "":
            return FeedReply(body='[{"id":"1"},{"id":"2"}]', delay=hold)
        if q["lastEventId"] == "2":
            return FeedReply(body='[{"id":"3"}]', delay=hold)
        return FeedReply(body="[]", delay=hold)

    server = feed_server(handler)
    client = FeedClient(poll_delay_seconds=5.0, timeout_seconds=0.1)
    sub = client.open(server.url)
    events: queue.Queue = queue.Queue()
    token = CancelToken()
    t0 = time.monotonic()
    run = _start(client, sub, events, token)

    assert _take(events, 3, timeout=2.0) == ["1", "2", "3"]
    assert time.monotonic() - t0 < 2.0
    token.cancel()
    run.join()

    assert all(r.query["timeout"] == "100" for r in server.requests)


def test_failed_cycle_keeps_cursor() -> None:
    http = FakeHttp(
        script=[
            _ok([{"id": "1"}]),
            _status(503, b"busy"),
            _ok("not a list"),  # type: ignore[arg-type]
            urllib.error.URLError(ConnectionRefusedError("refused")),
            _ok([{"id": "2"}]),
            _ok([]),
        ]
    )
    client = FeedClient(poll_delay_seconds=0.01, http=http)
    sub = client.open(ENDPOINT)
    events: queue.Queue = queue.Queue()
    token = CancelToken()
    run = _start(client, sub, events, token)

    assert _take(events, 2) == ["1", "2"]
    token.cancel()
    run.join()

    assert run.result == {"value": None}
    assert http.cursors[:5] == ["", "1", "1", "1", "1"]
    assert http.cursors[5] == "2"
    assert sub.failures == 3


def test_error_hook_observes_failures_without_stopping_the_loop() -> None:
    http = FakeHttp(script=[_status(500, b"boom"), _ok([{"id": "1"}]), _ok([])])
    seen: list[tuple[str, type]] = []

    def hook(subscription: Subscription, error: Exception) -> None:
        seen.append((subscription.last_event_id, type(error)))
        raise RuntimeError("hook bug")

    client = FeedClient(poll_delay_seconds=0.01, http=http, on_error=hook)
    sub = client.open(ENDPOINT)
    events: queue.Queue = queue.Queue()
    token = CancelToken()
    run = _start(client, sub, events, token)

    assert _take(events, 1) == ["1"]
    token.cancel()
    run.join()
    assert seen == [("", ServerError)]


def test_failures_are_logged(caplog) -> None:  # noqa: ANN001
    http = FakeHttp(script=[_status(500), _ok([{"id": "1"}]), _ok([])])
    client = FeedClient(poll_delay_seconds=0.01, http=http)
    sub = client.open(ENDPOINT)
    events: queue.Queue = queue.Queue()
    token = CancelToken()

    caplog.set_level(logging.WARNING, logger="httpfeeds")
    run = _start(client, sub, events, token)
    assert _take(events, 1) == ["1"]
    token.cancel()
    run.join()
    assert "fetch failed" in caplog.text


def test_no_fetch_while_batch_is_being_delivered() -> None:
    http = FakeHttp(script=[_ok([{"id": "1"}, {"id": "2"}])])
    release = threading.Event()
    delivered: list[str] = []

    def slow_sink(event: Event) -> None:
        delivered.append(event.id)
        if event.id == "1":
            release.wait(5.0)

    client = FeedClient(poll_delay_seconds=0.01, http=http)
    sub = client.open(ENDPOINT)
    token = CancelToken()
    run = _start(client, sub, slow_sink, token)

    _wait_until(lambda: delivered == ["1"])
    time.sleep(0.2)
    assert http.calls() == 1
    assert sub.state is SubscriptionState.DELIVERING
    assert sub.last_event_id == "1"

    release.set()
    _wait_until(lambda: http.calls() >= 2)
    token.cancel()
    run.join()
    assert delivered[:2] == ["1", "2"]


def test_empty_batches_wait_full_poll_delay_in_simple_polling() -> None:
    http = FakeHttp(script=[_ok([])])
    client = FeedClient(poll_delay_seconds=0.1, http=http)
    sub = client.open(ENDPOINT)
    token = CancelToken()
    run = _start(client, sub, lambda _e: None, token)

    _wait_until(lambda: http.calls() >= 4)
    token.cancel()
    run.join()

    gaps = [b - a for a, b in zip(http.times, http.times[1:])]
    assert all(g >= 0.09 for g in gaps[:3])


def test_cancel_is_prompt_even_with_long_poll_delay() -> None:
    http = FakeHttp(script=[_ok([])])
    client = FeedClient(poll_delay_seconds=30.0, http=http)
    sub = client.open(ENDPOINT)
    token = CancelToken()
    run = _start(client, sub, lambda _e: None, token)

    _wait_until(lambda: http.calls() == 1)
    t0 = time.monotonic()
    token.cancel()
    run.join(timeout=2.0)
    assert time.monotonic() - t0 < 1.0
    assert http.calls() == 1
    assert run.result == {"value": None}


def test_cancel_unblocks_full_queue_delivery() -> None:
    http = FakeHttp(script=[_ok([{"id": "1"}, {"id": "2"}])])
    client = FeedClient(poll_delay_seconds=0.01, http=http)
    sub = client.open(ENDPOINT)
    events: queue.Queue = queue.Queue(maxsize=1)
    token = CancelToken()
    run = _start(client, sub, events, token)

    _wait_until(events.full)
    time.sleep(0.1)
    assert http.calls() == 1
    token.cancel()
    run.join(timeout=2.0)
    assert run.result == {"value": None}
    assert events.get_nowait().id == "1"


def test_deadline_raises_cancelled() -> None:
    http = FakeHttp(script=[_ok([])])
    client = FeedClient(poll_delay_seconds=0.01, http=http)
    token = CancelToken(timeout_seconds=0.1)

    with pytest.raises(Cancelled) as exc_info:
        client.subscribe(ENDPOINT, "", lambda _e: None, token)
    assert isinstance(exc_info.value.__cause__, DeadlineExceeded)


def test_cancel_with_cause_raises_cancelled() -> None:
    http = FakeHttp(script=[_ok([])])
    client = FeedClient(poll_delay_seconds=0.01, http=http)
    sub = client.open(ENDPOINT)
    token = CancelToken()
    run = _start(client, sub, lambda _e: None, token)

    _wait_until(lambda: http.calls() >= 1)
    cause = RuntimeError("upstream failed")
    token.cancel(cause)
    run.join()
    assert isinstance(run.result["error"], Cancelled)
    assert run.result["error"].__cause__ is cause


def test_invalid_endpoint_fails_before_loop_starts() -> None:
    http = FakeHttp(script=[_ok([])])
    client = FeedClient(http=http)
    with pytest.raises(InvalidEndpoint):
        client.subscribe("::not a url::", "", lambda _e: None, CancelToken())
    assert http.calls() == 0


def test_already_cancelled_token_issues_no_fetch() -> None:
    http = FakeHttp(script=[_ok([{"id": "1"}])])
    client = FeedClient(http=http)
    token = CancelToken()
    token.cancel()
    assert client.subscribe(ENDPOINT, "7", lambda _e: None, token) is None
    assert http.calls() == 0


def test_sink_errors_propagate_to_caller() -> None:
    http = FakeHttp(script=[_ok([{"id": "1"}])])
    client = FeedClient(http=http)

    def bad_sink(_event: Event) -> None:
        raise KeyError("consumer bug")

    with pytest.raises(KeyError):
        client.subscribe(ENDPOINT, "", bad_sink, CancelToken())


def test_non_positive_durations_fall_back_to_defaults() -> None:
    client = FeedClient(poll_delay_seconds=0, timeout_seconds=-1, request_timeout_seconds=0)
    assert client.poll_delay_seconds == 5.0
    assert client.timeout_seconds == 0.0
    assert client.request_timeout_seconds == 30.0
    assert client.fetcher.request_timeout_seconds == 30.0
