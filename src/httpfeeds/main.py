from __future__ import annotations

import argparse
import json
import logging
import os
import queue
import sys
import threading
from typing import Any, TextIO

from .cancel import CancelToken, install_signal_handlers
from .config import load_config, build_client
from .errors import Cancelled, DeadlineExceeded, InvalidEndpoint
from .models import Event


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="httpfeeds", description="Subscribe to an HTTP feed and print event payloads")
    p.add_argument("endpoint", nargs="?", default=None, help="HTTP feed endpoint to subscribe to")
    p.add_argument("--config", default=None, help="Path to JSON config file")
    p.add_argument(
        "--poll-delay",
        type=int,
        default=None,
        help="Poll delay in milliseconds between each poll to the HTTP endpoint. Defaults to 5000",
    )
    p.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="Long-poll timeout in milliseconds until the server must send a response. 0 disables long-polling",
    )
    p.add_argument(
        "--request-timeout",
        type=int,
        default=None,
        help="Timeout in milliseconds for a single HTTP request. Defaults to 30000",
    )
    p.add_argument("--last-event-id", default=None, help="Last event ID received by the client")
    p.add_argument("--field", default=None, help="Print only this key of each event's data")
    p.add_argument("--max-seconds", type=float, default=None, help="Stop the subscription after this many seconds")
    p.add_argument("--verbose", action="store_true", help="Verbose output")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env HTTPFEEDS_LOG_LEVEL or WARNING",
    )
    return p


def _resolve_log_level(value: str | None, default: int) -> int:
    v = (value or "").strip().upper()
    if not v:
        return default
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return default


def format_event(event: Event, field: str | None = None) -> str:
    data = dict(event.data or {})
    if field:
        value: Any = data.get(field)
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)
    return json.dumps(data, ensure_ascii=False, sort_keys=True)


def main(argv: list[str] | None = None, *, out: TextIO | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    out = out or sys.stdout

    default_level = logging.DEBUG if args.verbose else logging.WARNING
    log_level = _resolve_log_level(args.log_level or os.environ.get("HTTPFEEDS_LOG_LEVEL"), default_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("httpfeeds")

    config = load_config(args.config).with_overrides(
        poll_delay_ms=args.poll_delay,
        timeout_ms=args.timeout,
        request_timeout_ms=args.request_timeout,
        endpoint=args.endpoint,
        last_event_id=args.last_event_id,
    )
    if not config.endpoint:
        parser.print_usage(sys.stderr)
        print("error: endpoint is required", file=sys.stderr)
        return 1

    client = build_client(config)
    try:
        subscription = client.open(config.endpoint, config.last_event_id)
    except InvalidEndpoint as e:
        logger.error("invalid endpoint: %s", e)
        return 1

    logger.info(
        "subscribing: endpoint=%s poll_delay=%.3fs timeout=%.3fs request_timeout=%.3fs last_event_id=%r",
        config.endpoint,
        client.poll_delay_seconds,
        client.timeout_seconds,
        client.request_timeout_seconds,
        subscription.last_event_id,
    )

    token = CancelToken(timeout_seconds=args.max_seconds)
    restore_signals = install_signal_handlers(token)
    events: queue.Queue[Event] = queue.Queue(maxsize=1)
    outcome: dict[str, BaseException] = {}

    def _run() -> None:
        try:
            client.run(subscription, events, token)
        except Cancelled as e:
            outcome["cancelled"] = e
        except Exception as e:  # noqa: BLE001
            logger.exception("subscription crashed: endpoint=%s", config.endpoint)
            outcome["error"] = e

    worker = threading.Thread(target=_run, name="httpfeeds-subscription", daemon=True)
    worker.start()
    try:
        while worker.is_alive() or not events.empty():
            try:
                event = events.get(timeout=0.1)
            except queue.Empty:
                continue
            print(format_event(event, args.field), file=out, flush=True)
    except KeyboardInterrupt:
        token.cancel()
    finally:
        worker.join(timeout=5)
        if restore_signals is not None:
            restore_signals()

    logger.info("stopped: last_event_id=%r events=%d", subscription.last_event_id, subscription.events_delivered)
    if "error" in outcome:
        return 1
    cancelled = outcome.get("cancelled")
    if cancelled is not None:
        if args.max_seconds is not None and isinstance(cancelled.__cause__, DeadlineExceeded):
            return 0
        logger.error("error: %s", cancelled)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
