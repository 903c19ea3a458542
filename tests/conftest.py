import os
import sys

import pytest


PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_DIR = os.path.join(PROJECT_ROOT, "src")
TESTS_DIR = os.path.dirname(os.path.abspath(__file__))

for _p in (SRC_DIR, TESTS_DIR):
    if _p not in sys.path:
        sys.path.insert(0, _p)

from feed_server import FeedServer  # noqa: E402


@pytest.fixture()
def feed_server():
    """
    启动本地 HTTP feed server 的工厂：feed_server(handler) -> FeedServer。

    handler 接收 query dict，返回 FeedReply；测试结束时统一关闭。
    """
    servers: list[FeedServer] = []

    def _start(handler) -> FeedServer:  # noqa: ANN001
        server = FeedServer(handler)
        server.start()
        servers.append(server)
        return server

    try:
        yield _start
    finally:
        for s in servers:
            s.stop()
