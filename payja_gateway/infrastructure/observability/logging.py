"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from payja_gateway.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter stamping every record with time, level and service"""

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

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_transition(
    request_id: str,
    session_id: str,
    flow: str,
    from_state: Optional[str],
    to_state: str,
    status: str,
    duration_ms: float,
) -> None:
    """One line per USSD step; user input is never logged"""
    logging.getLogger("payja.ussd").info(
        "USSD step completed",
        extra={
            "request_id": request_id,
            "session_id": session_id,
            "flow": flow,
            "from_state": from_state,
            "state": to_state,
            "status": status,
            "duration_ms": duration_ms,
        },
    )


def log_decision(
    loan_id: str,
    phone_number: str,
    decision: str,
    final_score: Optional[int],
    max_amount: float,
    reason: str,
) -> None:
    """Log structured decision outcome for analysis"""
    logging.getLogger("payja.decision").info(
        "Credit decision completed",
        extra={
            "loan_id": loan_id,
            "phone_number": phone_number,
            "step": "decision_complete",
            "decision": decision,
            "final_score": final_score,
            "max_amount": max_amount,
            "reason": reason,
        },
    )
