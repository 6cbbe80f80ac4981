"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, TextIO
from pythonjsonlogger import jsonlogger
from quota_ledger.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO", stream: TextIO | None = None) -> None:
    """Configure structured JSON logging on stdout, or on the given stream"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler, stdout unless the caller owns it
    handler = logging.StreamHandler(stream or sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_approval(
    entity: str,
    entity_id: int,
    entity_type: str,
    action: str,
    status: str,
    duration_ms: float,
) -> None:
    """Log a committed admin decision on a transaction or loan"""
    logging.info(
        "Approval committed",
        extra={
            "entity": entity,
            "entity_id": entity_id,
            "entity_type": entity_type,
            "step": "approval_complete",
            "action": action,
            "status": status,
            "duration_ms": duration_ms,
        },
    )


def log_sweep(sweep: str, processed: int, failed: int, duration_ms: float, **fields: Any) -> None:
    """Log the summary of a batch sweep run"""
    logging.info(
        "Sweep completed",
        extra={
            "sweep": sweep,
            "step": "sweep_complete",
            "processed": processed,
            "failed": failed,
            "duration_ms": duration_ms,
            **fields,
        },
    )
