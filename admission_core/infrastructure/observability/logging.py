"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from admission_core.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


logger = logging.getLogger("admission_core")


def log_transition(
    tenant_id: str,
    application_number: str,
    event: str,
    from_status: str,
    to_status: str,
) -> None:
    """Log an applied state machine transition"""
    logger.info(
        "Transition applied",
        extra={
            "tenant_id": tenant_id,
            "application_number": application_number,
            "step": event,
            "from_status": from_status,
            "to_status": to_status,
        },
    )


def log_invoice_issued(
    tenant_id: str,
    application_number: str,
    invoice_number: str,
    total: str,
    duration_ms: float,
) -> None:
    """Log structured invoice issuance for reconciliation"""
    logger.info(
        "Invoice issued",
        extra={
            "tenant_id": tenant_id,
            "application_number": application_number,
            "step": "invoice_issued",
            "invoice_number": invoice_number,
            "total": total,
            "duration_ms": duration_ms,
        },
    )


def log_dispatch(
    message_type: str,
    tenant_id: str,
    duration_ms: float,
    outcome: str,
    error_code: Optional[str] = None,
) -> None:
    """Log the outcome of one dispatched command or query"""
    level = logging.INFO if outcome == "ok" else logging.WARNING
    logger.log(
        level,
        "Dispatch completed",
        extra={
            "message_type": message_type,
            "tenant_id": tenant_id,
            "outcome": outcome,
            "error_code": error_code,
            "duration_ms": duration_ms,
        },
    )
