"""Integration tests for payload dispatch, listings and report export"""

import pytest
from prometheus_client import REGISTRY

from admission_core.dispatch.dispatcher import Dispatcher, create_dispatcher
from admission_core.dispatch.messages import (
    ExportApplicationsQuery,
    ListApplicationsQuery,
    ParentFields,
    ViewApplicationQuery,
)
from admission_core.domain.exceptions import ValidationError
from admission_core.domain.models import ApplicationStatus
from admission_core.services.admissions import AdmissionService


def submit_payload(**overrides):
    payload = {
        "tenant_id": "north",
        "student_fields": {"first_name": "Asha", "last_name": "Rao", "date_of_birth": "2015-04-02"},
        "parent_fields": {"name": "Meera Rao", "phone": "9800000001", "email": "meera.rao@example.com"},
        "session_id": "2024",
        "class_id": "5",
    }
    payload.update(overrides)
    return payload


async def test_dispatch_payload_submits(dispatcher):
    number = await dispatcher.dispatch_payload("SubmitApplicationCommand", submit_payload())

    snapshot = await dispatcher.dispatch_payload(
        "ViewApplicationQuery", {"tenant_id": "north", "application_number": number}
    )
    assert snapshot.status == ApplicationStatus.APPLIED
    assert snapshot.application.guardian_email == "meera.rao@example.com"


async def test_dispatch_payload_field_errors(dispatcher):
    """Test malformed payloads become a ValidationError carrying field paths"""
    payload = submit_payload(parent_fields={"name": "Meera Rao", "phone": "9800000001", "email": "not-an-email"})

    with pytest.raises(ValidationError) as exc_info:
        await dispatcher.dispatch_payload("SubmitApplicationCommand", payload)

    assert "parent_fields.email" in exc_info.value.errors


async def test_dispatch_payload_rejects_unknown_fields(dispatcher):
    with pytest.raises(ValidationError) as exc_info:
        await dispatcher.dispatch_payload(
            "ViewApplicationQuery", {"tenant_id": "north", "application_number": "2024-00001", "admin": True}
        )
    assert "admin" in exc_info.value.errors


async def test_dispatch_payload_requires_tenant(dispatcher):
    with pytest.raises(ValidationError) as exc_info:
        await dispatcher.dispatch_payload("ViewApplicationQuery", {"tenant_id": "", "application_number": "x"})
    assert "tenant_id" in exc_info.value.errors


async def test_unknown_message_type(dispatcher):
    with pytest.raises(ValidationError):
        await dispatcher.dispatch_payload("DeleteEverythingCommand", {"tenant_id": "north"})


async def test_unregistered_message(resolver):
    dispatcher = Dispatcher(resolver)
    assert not dispatcher.handles(ViewApplicationQuery)

    with pytest.raises(ValidationError):
        await dispatcher.dispatch(ViewApplicationQuery(tenant_id="north", application_number="2024-00001"))


async def test_dispatch_records_metrics(dispatcher):
    def observed():
        return REGISTRY.get_sample_value(
            "admission_dispatch_duration_seconds_count",
            {"message_type": "ListApplicationsQuery", "outcome": "ok"},
        ) or 0

    before = observed()
    await dispatcher.dispatch(ListApplicationsQuery(tenant_id="north"))
    assert observed() == before + 1


async def test_list_applications_filters(dispatcher, workflow):
    approved = await workflow.approve()
    applied = await workflow.submit(parent_fields=ParentFields(name="Kiran Das", phone="9811111111"))
    other_class = await workflow.submit(class_id="6", parent_fields=ParentFields(name="Lata Iyer", phone="9822222222"))

    by_status = await dispatcher.dispatch(
        ListApplicationsQuery(tenant_id="north", statuses=[ApplicationStatus.APPLIED])
    )
    assert {s.application.application_number for s in by_status} == {applied, other_class}
    assert approved not in {s.application.application_number for s in by_status}

    by_class = await dispatcher.dispatch(ListApplicationsQuery(tenant_id="north", class_id="6"))
    assert [s.application.class_id for s in by_class] == ["6"]

    page = await dispatcher.dispatch(ListApplicationsQuery(tenant_id="north", limit=2, offset=1))
    assert len(page) == 2


async def test_export_applications(dispatcher, workflow, exporter):
    """Test the listing is handed to the report export port"""
    invoiced = await workflow.invoiced()
    await workflow.submit(parent_fields=ParentFields(name="Kiran Das", phone="9811111111"))

    reference = await dispatcher.dispatch(ExportApplicationsQuery(tenant_id="north", report_name="admissions-2024"))

    assert reference == "north/admissions-2024.csv"
    rows = exporter.reports[reference]
    assert len(rows) == 2
    invoiced_row = next(row for row in rows if row["application_number"] == invoiced)
    assert invoiced_row["status"] == "invoiced"
    assert invoiced_row["fee_total"] == "1050.00"
    assert invoiced_row["student_name"] == "Asha Rao"
    assert invoiced_row["invoice_number"].startswith("NORTH-")


async def test_export_without_exporter(resolver):
    dispatcher = create_dispatcher(resolver=resolver, service=AdmissionService())

    with pytest.raises(ValidationError):
        await dispatcher.dispatch(ExportApplicationsQuery(tenant_id="north", report_name="r"))
