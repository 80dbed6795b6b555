"""Fire-and-forget diagnostic events."""

import sqlite3

import structlog

from stall_profiler.storage import insert_diagnostic_event

log = structlog.get_logger()

# Event names
UNRESPONSIVE_EVENT = "exthostunresponsive"
UNRESPONSIVE_MORE_EVENT = "exthostunresponsive-more"


class TelemetryService:
    """Records structured diagnostic events.

    Events always go to the structured log; when a database connection is
    given they are also stored for the `events` command. Storage failures
    are logged and never propagate to the caller.
    """

    def __init__(self, conn: sqlite3.Connection | None = None, enabled: bool = True) -> None:
        self.conn = conn
        self.enabled = enabled

    def public_log(self, event_name: str, data: dict) -> None:
        if not self.enabled:
            return

        log.info("diagnostic_event", event_name=event_name, **data)

        if self.conn is None:
            return
        try:
            insert_diagnostic_event(self.conn, event_name, data)
        except (sqlite3.Error, TypeError, ValueError) as e:
            log.warning("diagnostic_event_store_failed", event_name=event_name, error=str(e))
