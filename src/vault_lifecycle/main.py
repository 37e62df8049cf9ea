"""CLI entry point: log in, keep the session and requested secrets alive, report events."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from collections.abc import Sequence
from typing import Any

from vault_lifecycle.config import load_settings
from vault_lifecycle.errors import VaultError
from vault_lifecycle.events import EventPublisher
from vault_lifecycle.lease.container import SecretLeaseContainer
from vault_lifecycle.lease.model import Mode, RequestedSecret
from vault_lifecycle.scheduling import RenewalScheduler
from vault_lifecycle.session.manager import LifecycleAwareSessionManager

logger = logging.getLogger(__name__)


def parse_secret(value: str) -> RequestedSecret:
    """Parse ``path`` or ``path:rotate`` / ``path:renew`` into a ``RequestedSecret``."""
    path, _, mode = value.rpartition(":")
    if not path or mode not in (m.value for m in Mode):
        return RequestedSecret(value)
    return RequestedSecret(path, Mode(mode))


def main(argv: Sequence[str] | None = None, stop: threading.Event | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Vault session and lease lifecycle agent",
    )
    parser.add_argument(
        "--config",
        default="settings.yaml",
        help="Path to settings.yaml",
    )
    parser.add_argument(
        "--secret",
        action="append",
        default=[],
        metavar="PATH[:MODE]",
        help="Secret to fetch and keep leased (mode: renew or rotate); may be repeated",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        settings = load_settings(args.config)
    except VaultError as exc:
        logger.error("%s", exc)
        return 2

    if stop is None:
        stop = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
    publisher = EventPublisher([_log_event])
    transport = settings.create_transport()
    scheduler = RenewalScheduler()
    session: LifecycleAwareSessionManager | None = None
    leases: SecretLeaseContainer | None = None
    try:
        scheduler.start()
        session = settings.create_session_manager(transport, scheduler, publisher=publisher)
        leases = settings.create_lease_container(
            transport, scheduler, session_manager=session, publisher=publisher
        )
        session.get_session_token()
        for value in args.secret:
            leases.register(parse_secret(value))
        try:
            stop.wait()
        except KeyboardInterrupt:
            logger.info("Interrupted")
        return 0
    except VaultError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        if leases is not None:
            leases.close()
        if session is not None:
            session.destroy()
        scheduler.shutdown()
        transport.close()


def _log_event(event: Any) -> None:
    logger.info("Event: %s", type(event).__name__)


if __name__ == "__main__":
    raise SystemExit(main())
