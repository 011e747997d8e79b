"""
Logging setup and the audit trail of the IoT Certificate Authority.

Every line is a JSON object so onboarding decisions, key disclosures and
data releases can be shipped to a log pipeline and queried by field.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

request_id_var: ContextVar[str] = ContextVar('request_id', default='')

TEXT_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s] %(message)s'


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; audit fields are merged in at top level."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": ts.strftime('%Y-%m-%dT%H:%M:%S.') + f"{ts.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, 'extra_fields', {}))
        return json.dumps(entry, default=str)


class AuditLogger:
    """
    Audit trail of the CA.

    One method per security-relevant CA event: onboarding decisions,
    authentication outcomes, key disclosure and data movement.
    """

    def __init__(self, name: str = "iotca.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **fields) -> None:
        fields["event_type"] = event_type
        fields["request_id"] = request_id_var.get()
        self._logger.log(
            level,
            "%s: %s", event_type, fields.get("message", ""),
            extra={"extra_fields": fields},
            stacklevel=3,
        )

    def approval_decision(self, service_name: str, service_id: str, reason: str, outcome: str) -> None:
        """Log the outcome of an approval request (approved, denied, timed_out)."""
        level = logging.INFO if outcome == "approved" else logging.WARNING
        self._log(
            level,
            "APPROVAL_DECISION",
            service_name=service_name,
            service_id=service_id,
            reason=reason,
            outcome=outcome,
            message=f"Approval {outcome} for {service_name}"
        )

    def service_registered(self, service_name: str, service_id: str, algorithm: str, can_write_data: bool) -> None:
        self._log(
            logging.INFO,
            "SERVICE_REGISTERED",
            service_name=service_name,
            service_id=service_id,
            algorithm=algorithm,
            can_write_data=can_write_data,
            message=f"Issued {algorithm} keys to {service_name}"
        )

    def authentication_result(self, service_name: str, method: str, success: bool, reason: Optional[str] = None) -> None:
        """Log an authentication attempt by any method (challenge, session, private_key)."""
        self._log(
            logging.INFO if success else logging.WARNING,
            "AUTHENTICATION",
            service_name=service_name,
            method=method,
            success=success,
            reason=reason,
            message=f"Authentication {'succeeded' if success else 'failed'} for {service_name} via {method}"
        )

    def key_disclosed(self, requester_id: str, target_id: str) -> None:
        """Private key of one service handed to another. Always high severity."""
        self.security_event(
            "private_key_disclosed",
            severity="high",
            requester_service_id=requester_id,
            target_service_id=target_id,
        )

    def data_submitted(self, service_id: str, collection: str, record_id: str, storage_key_id: int) -> None:
        self._log(
            logging.INFO,
            "DATA_SUBMITTED",
            service_id=service_id,
            collection=collection,
            record_id=record_id,
            storage_key_id=storage_key_id,
            message=f"Stored record {record_id} for {service_id}"
        )

    def data_released(self, requester_id: str, target_id: str, released: int, skipped: int) -> None:
        self._log(
            logging.INFO if not skipped else logging.WARNING,
            "DATA_RELEASED",
            requester_service_id=requester_id,
            target_service_id=target_id,
            released=released,
            skipped=skipped,
            message=f"Released {released} records of {target_id} to {requester_id}"
        )

    def record_skipped(self, record_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "RECORD_SKIPPED",
            record_id=record_id,
            reason=reason,
            message=f"Record {record_id} skipped: {reason}"
        )

    _SEVERITY_LEVELS = {
        "low": logging.INFO,
        "medium": logging.WARNING,
        "high": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def security_event(self, event: str, severity: str = "medium", **details) -> None:
        """Event an operator should review, such as a rejected admin token."""
        self._log(
            self._SEVERITY_LEVELS.get(severity, logging.WARNING),
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            message=f"{severity} severity: {event}",
            **details,
        )

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"{client_id} throttled on {endpoint}",
        )


def configure_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None) -> None:
    """
    Route all loggers to stdout (and ``log_file`` when set).

    Replaces whatever handlers were installed before, so calling it twice
    does not duplicate output.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level {level!r}")

    formatter = StructuredFormatter() if json_format else logging.Formatter(TEXT_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(numeric)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh uuid4) to the current context and return it."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


audit_log = AuditLogger()
