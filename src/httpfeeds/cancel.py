"""
线程友好的取消信号。

一个订阅只受一个 CancelToken 控制：
- 显式 cancel()（可带 cause），或截止时间到达（cause 为 DeadlineExceeded）
- wait() 是可被取消打断的 sleep，用来代替 time.sleep
- call() 在后台线程执行阻塞调用，取消时立即返回而不必等调用结束

token 通过参数显式传递，不依赖任何全局/隐式上下文。
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from concurrent.futures import Future
from types import FrameType
from typing import Any, Callable, TypeVar

from .errors import Cancelled, DeadlineExceeded


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    def __init__(self, *, timeout_seconds: float | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._cause: BaseException | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._deadline: float | None = None
        self._timer: threading.Timer | None = None
        if timeout_seconds is not None:
            self._deadline = time.monotonic() + max(0.0, float(timeout_seconds))
            self._timer = threading.Timer(max(0.0, float(timeout_seconds)), self._expire)
            self._timer.daemon = True
            self._timer.start()

    @property
    def deadline(self) -> float | None:
        """截止时间（time.monotonic() 时钟），没有截止时间时为 None。"""
        return self._deadline

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._expire()
            return True
        return False

    @property
    def cause(self) -> BaseException | None:
        return self._cause

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self, cause: BaseException | None = None) -> None:
        """
        触发取消（幂等）；只有第一次调用的 cause 生效。
        """
        with self._lock:
            if self._event.is_set():
                return
            self._cause = cause
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
            timer = self._timer
        if timer is not None:
            timer.cancel()
        for cb in callbacks:
            self._run_callback(cb)

    def _expire(self) -> None:
        self.cancel(DeadlineExceeded("deadline exceeded"))

    def add_callback(self, fn: Callable[[], None]) -> None:
        """
        注册取消回调；若已取消则立即在当前线程调用。
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(fn)
                return
        self._run_callback(fn)

    def remove_callback(self, fn: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(fn)
            except ValueError:
                pass

    def _run_callback(self, fn: Callable[[], None]) -> None:
        try:
            fn()
        except Exception:  # noqa: BLE001
            logger.exception("cancel callback failed: callback=%r", fn)

    def wait(self, timeout: float | None = None) -> bool:
        """
        可中断等待。

        返回：
        - True：token 已触发（取消或截止时间到）
        - False：timeout 先到
        """
        if timeout is not None:
            timeout = max(0.0, float(timeout))
        self._event.wait(timeout=timeout)
        return self.cancelled

    def error(self) -> Cancelled:
        cause = self._cause
        if isinstance(cause, DeadlineExceeded):
            err = Cancelled("subscription cancelled: deadline exceeded")
        elif cause is not None:
            err = Cancelled(f"subscription cancelled: {type(cause).__name__}: {cause}")
        else:
            err = Cancelled("subscription cancelled")
        err.__cause__ = cause
        return err

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.error()

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        call_timeout: float | None = None,
        **kwargs: Any,
    ) -> T:
        """
        在后台 daemon 线程中执行阻塞调用 fn(*args, **kwargs)。

        - fn 正常返回/抛异常：原样返回/抛出
        - token 先触发：立即抛 Cancelled，后台调用被放弃（由其自身的 socket 超时兜底结束）
        - call_timeout 是整次调用的上限（秒）；先到则抛 TimeoutError，token 本身不受影响
        """
        self.raise_if_cancelled()
        if call_timeout is not None:
            call_timeout = max(0.0, float(call_timeout))

        future: Future[T] = Future()
        done = threading.Event()
        future.add_done_callback(lambda _f: done.set())

        def _target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:  # noqa: BLE001
                future.set_exception(e)

        self.add_callback(done.set)
        try:
            thread = threading.Thread(target=_target, name="httpfeeds-call", daemon=True)
            thread.start()
            done.wait(call_timeout)
        finally:
            self.remove_callback(done.set)

        if future.done():
            return future.result()
        if self.cancelled:
            raise self.error()
        future.cancel()
        raise TimeoutError(f"call did not finish within {call_timeout}s")


def install_signal_handlers(token: CancelToken) -> Callable[[], None] | None:
    """
    SIGTERM/SIGINT -> token.cancel()，并串联之前已安装的 handler。

    只能在主线程安装；返回恢复原 handler 的函数，非主线程时返回 None。
    """
    if threading.current_thread() is not threading.main_thread():
        return None

    def _wrap(prev: Any) -> Callable[[int, FrameType | None], Any]:
        def _handler(signum: int, frame: FrameType | None) -> Any:
            logger.info("signal received: signum=%d", signum)
            token.cancel()
            if callable(prev) and prev is not signal.default_int_handler:
                return prev(signum, frame)
            return None

        return _handler

    previous: dict[int, Any] = {}
    for s in (signal.SIGTERM, signal.SIGINT):
        previous[s] = signal.getsignal(s)
        signal.signal(s, _wrap(previous[s]))

    def _restore() -> None:
        for s, prev in previous.items():
            if prev is not None:
                signal.signal(s, prev)

    return _restore
