"""
Logging configuration for the record key custody service.

Every line is one JSON object, tagged with the request id of the HTTP
call that produced it. Custody events go through ``AuditLogger`` so that
every key movement and every release decision has the same shape.
Key material is never passed to any logger in this package.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Request id of the HTTP call being served, set by the API middleware
request_id_var: ContextVar[str] = ContextVar('request_id', default='')

SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


class StructuredFormatter(logging.Formatter):
    """Render records as single-line JSON for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        rid = request_id_var.get()
        if rid:
            entry["request_id"] = rid
        entry.update(getattr(record, "audit", {}))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class AuditLogger:
    """
    Custody audit trail.

    One method per event. Fields are attached to the record under
    ``audit`` and flattened into the JSON line by ``StructuredFormatter``.
    """

    def __init__(self, name: str = "record_custody.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **fields) -> None:
        message = fields.pop("message", "")
        fields["event_type"] = event_type
        self._logger.log(level, "%s: %s", event_type, message, extra={"audit": fields})

    # --- key lifecycle ---

    def key_stored(self, handle: str, size: int, scheme: str) -> None:
        self._log(logging.INFO, "KEY_STORED", handle=handle, size=size, scheme=scheme,
                  message=f"Key stored under {handle}")

    def key_associated(self, old_handle: str, new_handle: str) -> None:
        self._log(logging.INFO, "KEY_ASSOCIATED", old_handle=old_handle, new_handle=new_handle,
                  message=f"Key moved from {old_handle} to {new_handle}")

    def key_overwritten(self, handle: str) -> None:
        self._log(logging.WARNING, "KEY_OVERWRITTEN", handle=handle,
                  message=f"Key material for {handle} replaced")

    def key_purged(self, handle: str, reason: str) -> None:
        self._log(logging.WARNING, "KEY_PURGED", handle=handle, reason=reason,
                  message=f"Key {handle} purged: {reason}")

    # --- release decisions ---

    def key_released(self, record_id: int, requester: str, tier: str) -> None:
        """A key left custody; ``tier`` is the rule that allowed it."""
        self._log(logging.INFO, "KEY_RELEASED", record_id=record_id, requester=requester, tier=tier,
                  message=f"Key for record {record_id} released to {requester} via {tier}")

    def key_withheld(self, record_id: int, requester: str, reason: str) -> None:
        self._log(logging.WARNING, "KEY_WITHHELD", record_id=record_id, requester=requester, reason=reason,
                  message=f"Key for record {record_id} withheld from {requester}: {reason}")

    def ledger_error(self, record_id: int, requester: str, error: str) -> None:
        """The ledger could not answer and the request was denied."""
        self._log(logging.ERROR, "LEDGER_ERROR", record_id=record_id, requester=requester, error=error,
                  message=f"Ledger query failed for record {record_id}; denied")

    # --- operations ---

    def reconciliation_completed(self, **summary) -> None:
        self._log(logging.INFO, "RECONCILIATION_COMPLETED", message="Orphan key sweep completed", **summary)

    def security_event(self, event: str, severity: str = "medium", **details) -> None:
        self._log(SEVERITY_LEVELS.get(severity, logging.WARNING), "SECURITY_EVENT",
                  security_event=event, severity=severity, message=f"Security event: {event}", **details)

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._log(logging.WARNING, "RATE_LIMIT_EXCEEDED", client_id=client_id, endpoint=endpoint,
                  message=f"Rate limit exceeded for {client_id} on {endpoint}")


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Replace the root logger's handlers.

    Args:
        level: Level name, e.g. ``"INFO"``
        json_format: JSON lines when True, plain text otherwise
        log_file: Also write to this file when given
    """
    formatter: logging.Formatter = (
        StructuredFormatter() if json_format
        else logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    )
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level.upper())


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id (generated when None) to the current context and return it."""
    request_id = request_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


audit_log = AuditLogger()
