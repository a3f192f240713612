"""Pytest fixtures for testing"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import pytest

from admission_core.dispatch.dispatcher import Dispatcher, create_dispatcher
from admission_core.dispatch.messages import (
    CalculateFeeCommand,
    ConfirmAdmissionCommand,
    IssueInvoiceCommand,
    ParentFields,
    SkipTestCommand,
    StudentFields,
    SubmitApplicationCommand,
    UploadDocumentCommand,
    VerifyDocumentsCommand,
)
from admission_core.domain.models import Tenant
from admission_core.infrastructure.clients.notifications import NotificationPublisher
from admission_core.infrastructure.database.models import (
    ClassPolicy,
    DiscountRuleRecord,
    DocumentRequirement,
    FeeScheduleEntry,
)
from admission_core.infrastructure.database.session import TenantContext, TenantContextResolver, TenantRegistry
from admission_core.services.admissions import AdmissionService


class RecordingNotifier:
    """Notification port that keeps every event in memory"""

    def __init__(self):
        self.events: List[Tuple[str, str, str]] = []

    async def notify(self, tenant_id: str, application_number: str, event_type: str) -> None:
        self.events.append((tenant_id, application_number, event_type))

    def types_for(self, application_number: str) -> List[str]:
        return [event for _, number, event in self.events if number == application_number]


class RecordingExporter:
    """Report export port that keeps the rows it was given"""

    def __init__(self):
        self.reports: Dict[str, List[Dict[str, Any]]] = {}

    async def export(self, tenant_id: str, report_name: str, rows: List[Dict[str, Any]]) -> str:
        reference = f"{tenant_id}/{report_name}.csv"
        self.reports[reference] = rows
        return reference


async def seed_reference_data(ctx: TenantContext) -> None:
    """
    Reference data for every test tenant.

    Class 5: tuition 1000 + 5% tax, birth certificate and photo, no entrance test.
    Class 6: tuition 2000 + transport 500, birth certificate, entrance test.
    """
    tenant_id = ctx.tenant_id
    ctx.session.add_all(
        [
            FeeScheduleEntry(
                tenant_id=tenant_id, session_id="2024", class_section_id="5", position=0,
                fee_type="tuition", group_id="academic", name="Tuition Fee",
                base_amount=Decimal("1000.00"), tax_percent=Decimal("5"),
            ),
            FeeScheduleEntry(
                tenant_id=tenant_id, session_id="2024", class_section_id="6", position=0,
                fee_type="tuition", group_id="academic", name="Tuition Fee",
                base_amount=Decimal("2000.00"), tax_percent=Decimal("0"),
            ),
            FeeScheduleEntry(
                tenant_id=tenant_id, session_id="2024", class_section_id="6", position=1,
                fee_type="transport", group_id="services", name="Bus Fee",
                base_amount=Decimal("500.00"), tax_percent=Decimal("0"),
            ),
            DocumentRequirement(tenant_id=tenant_id, class_id="5", document_type="birth_certificate"),
            DocumentRequirement(tenant_id=tenant_id, class_id="5", document_type="photo"),
            DocumentRequirement(tenant_id=tenant_id, class_id="6", document_type="birth_certificate"),
            ClassPolicy(tenant_id=tenant_id, class_id="5", entrance_test_required=False),
            ClassPolicy(tenant_id=tenant_id, class_id="6", entrance_test_required=True),
            DiscountRuleRecord(tenant_id=tenant_id, source="sibling", kind="percent", value=Decimal("10")),
            DiscountRuleRecord(
                tenant_id=tenant_id, source="referral", rule_key="REF-GOOD", kind="flat", value=Decimal("50")
            ),
            DiscountRuleRecord(
                tenant_id=tenant_id, source="referral", rule_key="REF-PENDING", kind="flat",
                value=Decimal("50"), approved=False,
            ),
            DiscountRuleRecord(
                tenant_id=tenant_id, source="promo_code", rule_key="EARLY10", kind="percent", value=Decimal("10"),
                valid_until=datetime(2099, 1, 1, tzinfo=timezone.utc),
            ),
            DiscountRuleRecord(
                tenant_id=tenant_id, source="promo_code", rule_key="EXPIRED", kind="percent", value=Decimal("10"),
                valid_until=datetime(2020, 1, 1, tzinfo=timezone.utc),
            ),
            DiscountRuleRecord(
                tenant_id=tenant_id, source="staff", rule_key="staff_child", kind="percent",
                value=Decimal("50"), fee_type="tuition",
            ),
        ]
    )
    await ctx.session.commit()


@pytest.fixture
def registry(tmp_path) -> TenantRegistry:
    """Four campuses: two with their own store, two sharing one store and invoice prefix, plus a disabled one"""
    north = f"sqlite+aiosqlite:///{tmp_path / 'north.db'}"
    south = f"sqlite+aiosqlite:///{tmp_path / 'south.db'}"
    shared = f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}"
    return TenantRegistry(
        [
            Tenant(tenant_id="north", display_name="North Campus", database_url=north, invoice_prefix="NORTH"),
            Tenant(tenant_id="south", display_name="South Campus", database_url=south),
            Tenant(tenant_id="east", display_name="East Campus", database_url=shared, invoice_prefix="SHARED"),
            Tenant(tenant_id="west", display_name="West Campus", database_url=shared, invoice_prefix="SHARED"),
            Tenant(tenant_id="closed", display_name="Closed Campus", database_url=north, enabled=False),
        ]
    )


@pytest.fixture
async def resolver(registry: TenantRegistry):
    """Resolver with schemas created and reference data seeded for every enabled tenant"""
    resolver = TenantContextResolver(registry)
    for tenant in registry:
        if not tenant.enabled:
            continue
        await resolver.create_schema(tenant.tenant_id)
        async with resolver.scope(tenant.tenant_id) as ctx:
            await seed_reference_data(ctx)
    yield resolver
    await resolver.dispose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def exporter() -> RecordingExporter:
    return RecordingExporter()


@pytest.fixture
def publisher(notifier: RecordingNotifier) -> NotificationPublisher:
    return NotificationPublisher(notifier)


@pytest.fixture
def service(publisher: NotificationPublisher, exporter: RecordingExporter) -> AdmissionService:
    return AdmissionService(publisher=publisher, exporter=exporter)


@pytest.fixture
def dispatcher(resolver: TenantContextResolver, service: AdmissionService) -> Dispatcher:
    return create_dispatcher(resolver=resolver, service=service)


@pytest.fixture
def student() -> StudentFields:
    return StudentFields(first_name="Asha", last_name="Rao", date_of_birth=date(2015, 4, 2), gender="F")


@pytest.fixture
def parent() -> ParentFields:
    return ParentFields(name="Meera Rao", phone="9800000001", email="meera.rao@example.com")


class Workflow:
    """Drives applications through the admission steps"""

    def __init__(self, dispatcher: Dispatcher, student: StudentFields, parent: ParentFields):
        self.dispatcher = dispatcher
        self.student = student
        self.parent = parent

    async def submit(self, tenant_id: str = "north", class_id: str = "5", **overrides) -> str:
        fields = {
            "tenant_id": tenant_id,
            "student_fields": self.student,
            "parent_fields": self.parent,
            "session_id": "2024",
            "class_id": class_id,
        }
        fields.update(overrides)
        return await self.dispatcher.dispatch(SubmitApplicationCommand(**fields))

    async def approve(self, tenant_id: str = "north", **overrides) -> str:
        """Submit, upload class 5 documents, verify and skip the test"""
        number = await self.submit(tenant_id, **overrides)
        for document_type in ("birth_certificate", "photo"):
            await self.dispatcher.dispatch(
                UploadDocumentCommand(
                    tenant_id=tenant_id,
                    application_number=number,
                    document_type=document_type,
                    document_ref=f"s3://docs/{number}/{document_type}.pdf",
                )
            )
        await self.dispatcher.dispatch(VerifyDocumentsCommand(tenant_id=tenant_id, application_number=number))
        await self.dispatcher.dispatch(SkipTestCommand(tenant_id=tenant_id, application_number=number))
        return number

    async def fee_calculated(self, tenant_id: str = "north", **overrides) -> str:
        number = await self.approve(tenant_id, **overrides)
        await self.dispatcher.dispatch(CalculateFeeCommand(tenant_id=tenant_id, application_number=number))
        return number

    async def invoiced(self, tenant_id: str = "north", **overrides) -> str:
        number = await self.fee_calculated(tenant_id, **overrides)
        await self.dispatcher.dispatch(IssueInvoiceCommand(tenant_id=tenant_id, application_number=number))
        return number

    async def admitted(self, tenant_id: str = "north", **overrides) -> str:
        number = await self.invoiced(tenant_id, **overrides)
        await self.dispatcher.dispatch(ConfirmAdmissionCommand(tenant_id=tenant_id, application_number=number))
        return number


@pytest.fixture
def workflow(dispatcher: Dispatcher, student: StudentFields, parent: ParentFields) -> Workflow:
    return Workflow(dispatcher, student, parent)
