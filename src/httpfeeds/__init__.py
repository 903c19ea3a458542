"""
HTTP Feeds client (httpfeeds)

通过轮询（simple polling）或长轮询（long-polling）方式订阅一个 HTTP feed 端点，
将服务端返回的 CloudEvents 按顺序交付给调用方，并在瞬时故障时保持 cursor 不丢失。
"""

from .cancel import CancelToken
from .errors import (
    Cancelled,
    DeadlineExceeded,
    FeedError,
    InvalidEndpoint,
    MalformedResponse,
    ServerError,
    TransportError,
)
from .fetcher import Fetcher
from .models import Event
from .subscription import FeedClient, Subscription, SubscriptionState

__all__ = [
    "CancelToken",
    "Cancelled",
    "DeadlineExceeded",
    "Event",
    "FeedClient",
    "FeedError",
    "Fetcher",
    "InvalidEndpoint",
    "MalformedResponse",
    "ServerError",
    "Subscription",
    "SubscriptionState",
    "TransportError",
]
