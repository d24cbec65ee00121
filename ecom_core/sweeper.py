from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .reservations import cleanup_expired

logger = logging.getLogger(__name__)


def sweep_once(session_factory: Callable[[], Session]) -> int:
    db = session_factory()
    try:
        return cleanup_expired(db)
    finally:
        db.close()


def start_sweeper_in_thread(
    session_factory: Callable[[], Session],
    *,
    interval_seconds: float = 60,
    daemon: bool = True,
) -> Tuple[threading.Thread, threading.Event]:
    """Delete expired reservations every ``interval_seconds`` until the event is set.

    Availability already ignores expired holds, so a missed sweep only delays
    the ``unreserved`` audit rows.
    """
    stop = threading.Event()

    def _run() -> None:
        while not stop.is_set():
            try:
                sweep_once(session_factory)
            except SQLAlchemyError:
                # database down, lock timeout, etc.; try again next round
                logger.exception("reservation sweep failed")
            stop.wait(interval_seconds)

    t = threading.Thread(target=_run, name="reservation-sweeper", daemon=daemon)
    t.start()
    logger.info("reservation sweeper started", extra={"interval_seconds": interval_seconds})
    return t, stop


def stop_sweeper(handle: Optional[Tuple[threading.Thread, threading.Event]], timeout: float = 5.0) -> None:
    if handle is None:
        return
    thread, stop = handle
    stop.set()
    thread.join(timeout)
