from __future__ import annotations

import argparse
import logging
import signal
import threading

from api_explorer.config import get_settings
from api_explorer.credentials import (
    CredentialManager,
    CredentialStatus,
    RevalidationScheduler,
    SqlCredentialStore,
)
from api_explorer.db import SessionLocal, init_db
from api_explorer.relay import HttpRelayClient


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate and keep the cached API token fresh through a relay.")
    parser.add_argument("--relay-url", required=True, help="Relay endpoint, e.g. http://localhost:8000/api/proxy")
    parser.add_argument("--token", default=None, help="Token to set; omit to use the stored one")
    parser.add_argument("--clear", action="store_true", help="Clear the stored token and exit")
    parser.add_argument("--watch", action="store_true", help="Keep running and revalidate periodically")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger = logging.getLogger("api_explorer.token_main")

    init_db()
    manager = CredentialManager(
        relay=HttpRelayClient(relay_url=args.relay_url, timeout=settings.upstream_timeout_sec),
        store=SqlCredentialStore(session_factory=SessionLocal),
        storage_key=settings.credential_storage_key,
        check_path=settings.credential_check_path,
        freshness_sec=settings.credential_freshness_sec,
    )

    if args.clear:
        manager.clear()
        logger.info("token_cleared")
        return 0

    if args.token is not None:
        manager.set_token(args.token)
    else:
        manager.load()

    snapshot = manager.snapshot()
    logger.info("token_status status=%s error=%s", snapshot.status.value, snapshot.error)
    if not args.watch:
        return 0 if snapshot.status is CredentialStatus.valid else 1

    scheduler = RevalidationScheduler(manager=manager, interval_sec=settings.credential_revalidate_interval_sec)
    stop_event = threading.Event()

    def _signal_handler(signum: int, _frame) -> None:
        logger.info("token_watch_signal_received signum=%s", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    scheduler.start()
    logger.info("token_watch_started interval_sec=%s", scheduler.interval_sec)
    try:
        while not stop_event.wait(1.0):
            continue
    finally:
        scheduler.stop()
        logger.info("token_watch_stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
