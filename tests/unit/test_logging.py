"""Unit tests for structured logging"""

import json
import logging

from admission_core.infrastructure.observability.logging import CustomJsonFormatter, log_transition


def test_json_formatter_adds_service_fields():
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    record = logging.LogRecord("admission_core", logging.INFO, __file__, 1, "Transition applied", None, None)
    record.tenant_id = "north"

    data = json.loads(formatter.format(record))

    assert data["message"] == "Transition applied"
    assert data["level"] == "INFO"
    assert data["service"] == "admission-core"
    assert data["tenant_id"] == "north"
    assert "timestamp" in data


def test_log_transition_extra_fields(caplog):
    with caplog.at_level(logging.INFO, logger="admission_core"):
        log_transition("north", "2024-00001", "submit", "enquiry", "applied")

    record = next(r for r in caplog.records if r.getMessage() == "Transition applied")
    assert record.tenant_id == "north"
    assert record.application_number == "2024-00001"
    assert record.step == "submit"
    assert record.to_status == "applied"
