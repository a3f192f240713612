"""Admission workflow handlers - one method per command or query"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from admission_core.config import settings
from admission_core.domain.exceptions import AdmissionError, AlreadyInvoicedError, ValidationError
from admission_core.domain.models import (
    AdmissionEvent,
    Application,
    ApplicationFilter,
    ApplicationSnapshot,
    ApplicationStatus,
    Document,
    FeeBreakdown,
    Invoice,
)
from admission_core.domain.state_machine import (
    TransitionFacts,
    apply_transition,
    ensure_not_admitted,
    next_status,
)
from admission_core.dispatch.messages import (
    CalculateFeeCommand,
    CalculateFeeQuery,
    ConfirmAdmissionCommand,
    CreateEnquiryCommand,
    ExportApplicationsQuery,
    IssueInvoiceCommand,
    ListApplicationsQuery,
    ParentFields,
    RecordTestResultCommand,
    ScheduleTestCommand,
    SkipTestCommand,
    StudentFields,
    SubmitApplicationCommand,
    UploadDocumentCommand,
    VerifyDocumentsCommand,
    ViewApplicationQuery,
)
from admission_core.infrastructure.clients.notifications import NotificationPublisher
from admission_core.infrastructure.clients.reports import ReportExportPort
from admission_core.infrastructure.database.repositories import (
    ApplicationRepository,
    DocumentRepository,
    InvoiceRepository,
    SequenceRepository,
)
from admission_core.infrastructure.database.session import TenantContext, unit_of_work
from admission_core.infrastructure.observability.logging import log_transition
from admission_core.infrastructure.observability.metrics import record_duplicate_invoice, record_transition
from admission_core.infrastructure.providers import DatabaseRequirementProvider, RequirementProvider
from admission_core.services.fee_engine import FeeCalculationEngine
from admission_core.services.invoicing import ApplicationLocks, InvoiceGenerator

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _apply_identity(application: Application, student: StudentFields, parent: ParentFields) -> None:
    """Copy supplied identity fields; omitted fields keep their current value"""
    updates = {
        "student_first_name": student.first_name,
        "student_last_name": student.last_name,
        "date_of_birth": student.date_of_birth,
        "gender": student.gender,
        "guardian_name": parent.name,
        "guardian_phone": parent.phone,
        "guardian_email": parent.email,
    }
    for name, value in updates.items():
        if value is not None:
            setattr(application, name, value)


def breakdown_from_invoice(invoice: Invoice, application: Application) -> FeeBreakdown:
    """Fees as snapshotted on the invoice, not recalculated"""
    items = invoice.line_items
    return FeeBreakdown(
        application_number=invoice.application_number,
        session_id=application.session_id,
        class_section_id=application.class_section_id,
        line_items=items,
        subtotal=sum((item.base_amount for item in items), ZERO),
        tax_total=sum((item.tax_amount for item in items), ZERO),
        discount_total=sum((item.discount_amount for item in items), ZERO),
        total=invoice.total,
    )


class AdmissionService:
    """Runs admission commands and queries against one TenantContext at a time"""

    def __init__(
        self,
        applications: Optional[ApplicationRepository] = None,
        documents: Optional[DocumentRepository] = None,
        invoices: Optional[InvoiceRepository] = None,
        sequences: Optional[SequenceRepository] = None,
        requirements: Optional[RequirementProvider] = None,
        fee_engine: Optional[FeeCalculationEngine] = None,
        invoice_generator: Optional[InvoiceGenerator] = None,
        publisher: Optional[NotificationPublisher] = None,
        exporter: Optional[ReportExportPort] = None,
        locks: Optional[ApplicationLocks] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.applications = applications or ApplicationRepository()
        self.documents = documents or DocumentRepository(self.applications)
        self.invoices = invoices or InvoiceRepository()
        self.sequences = sequences or SequenceRepository()
        self.requirements = requirements or DatabaseRequirementProvider()
        self.fee_engine = fee_engine or FeeCalculationEngine(applications=self.applications, clock=clock)
        self.invoice_generator = invoice_generator or InvoiceGenerator(
            applications=self.applications, invoices=self.invoices, sequences=self.sequences, clock=clock
        )
        self.publisher = publisher or NotificationPublisher()
        self.exporter = exporter
        self.locks = locks or ApplicationLocks()
        self.clock = clock

    # ---- helpers -------------------------------------------------------

    async def _transition(
        self,
        ctx: TenantContext,
        application: Application,
        event: AdmissionEvent,
        facts: Optional[TransitionFacts] = None,
    ) -> None:
        """Guard, apply and persist one event; the caller owns the unit of work"""
        from_status = application.status
        try:
            ensure_not_admitted(application)
            apply_transition(application, event, facts, now=self.clock())
        except AdmissionError:
            record_transition(event.value, applied=False)
            raise
        await self.applications.save(ctx, application)
        record_transition(event.value, applied=True)
        log_transition(ctx.tenant_id, application.application_number, event.value, from_status.value, application.status.value)

    def _announce(self, ctx: TenantContext, application: Application) -> None:
        self.publisher.publish(ctx.tenant_id, application.application_number, f"application.{application.status.value}")

    async def _next_application_number(self, ctx: TenantContext, session_id: str) -> str:
        sequence = await self.sequences.next_value(ctx, f"application:{session_id}")
        return f"{session_id}-{sequence:0{settings.application_number_width}d}"

    async def _new_application(
        self,
        ctx: TenantContext,
        session_id: str,
        class_id: str,
        section: Optional[str],
        student_type_id: Optional[str],
        referral_code: Optional[str],
        promo_code: Optional[str],
    ) -> Application:
        now = self.clock()
        return Application(
            application_number=await self._next_application_number(ctx, session_id),
            tenant_id=ctx.tenant_id,
            session_id=session_id,
            class_id=class_id,
            section=section,
            student_type_id=student_type_id,
            referral_code=referral_code,
            promo_code=promo_code,
            created_at=now,
            updated_at=now,
        )

    async def _snapshot(self, ctx: TenantContext, application: Application) -> ApplicationSnapshot:
        documents = await self.documents.list_for_application(ctx, application.application_number)
        invoice = await self.invoices.get_for_application(ctx, application.application_number)
        fees = None
        if invoice is not None:
            fees = breakdown_from_invoice(invoice, application)
        elif application.status in (ApplicationStatus.APPROVED, ApplicationStatus.FEE_CALCULATED):
            fees = await self.fee_engine.calculate_for(ctx, application)
        return ApplicationSnapshot(
            application=application,
            documents=tuple(documents),
            fees=fees,
            invoice=invoice,
        )

    # ---- commands ------------------------------------------------------

    async def create_enquiry(self, ctx: TenantContext, command: CreateEnquiryCommand) -> str:
        async with unit_of_work(ctx):
            application = await self._new_application(
                ctx,
                command.session_id,
                command.class_id,
                command.section,
                command.student_type_id,
                command.referral_code,
                command.promo_code,
            )
            _apply_identity(application, command.student_fields, command.parent_fields)
            await self.applications.save(ctx, application)
        self._announce(ctx, application)
        return application.application_number

    async def submit_application(self, ctx: TenantContext, command: SubmitApplicationCommand) -> str:
        """
        Fire `submit`; creates the enquiry first when no application number is given.

        Raises:
            ValidationError: Required student/guardian fields are missing
        """
        async with unit_of_work(ctx):
            if command.application_number:
                application = await self.applications.lock(ctx, command.application_number)
                for name in ("section", "student_type_id", "referral_code", "promo_code"):
                    value = getattr(command, name)
                    if value is not None:
                        setattr(application, name, value)
            else:
                missing = {name: "required" for name in ("session_id", "class_id") if not getattr(command, name)}
                if missing:
                    raise ValidationError("session_id and class_id are required for a new application", errors=missing)
                application = await self._new_application(
                    ctx,
                    command.session_id,
                    command.class_id,
                    command.section,
                    command.student_type_id,
                    command.referral_code,
                    command.promo_code,
                )
            _apply_identity(application, command.student_fields, command.parent_fields)
            await self._transition(ctx, application, AdmissionEvent.SUBMIT)
        self._announce(ctx, application)
        return application.application_number

    async def upload_document(self, ctx: TenantContext, command: UploadDocumentCommand) -> None:
        """First upload moves Applied to DocumentsPending; later uploads are stored while still pending"""
        async with unit_of_work(ctx):
            application = await self.applications.lock(ctx, command.application_number)
            ensure_not_admitted(application)
            moved = application.status != ApplicationStatus.DOCUMENTS_PENDING
            if moved:
                await self._transition(ctx, application, AdmissionEvent.UPLOAD_DOCUMENTS)
            await self.documents.upsert(
                ctx,
                command.application_number,
                Document(document_type=command.document_type, document_ref=command.document_ref, uploaded_at=self.clock()),
            )
        if moved:
            self._announce(ctx, application)

    async def verify_documents(self, ctx: TenantContext, command: VerifyDocumentsCommand) -> None:
        """
        Raises:
            MissingDocumentsError: A mandatory document type has not been uploaded
        """
        async with unit_of_work(ctx):
            application = await self.applications.lock(ctx, command.application_number)
            mandatory = await self.requirements.get_mandatory_documents(ctx, application.class_id)
            uploaded = {doc.document_type for doc in await self.documents.list_for_application(ctx, application.application_number)}
            facts = TransitionFacts(missing_documents=tuple(sorted(mandatory - uploaded)))
            await self._transition(ctx, application, AdmissionEvent.VERIFY, facts)
        self._announce(ctx, application)

    async def _test_step(self, ctx: TenantContext, application_number: str, event: AdmissionEvent) -> None:
        async with unit_of_work(ctx):
            application = await self.applications.lock(ctx, application_number)
            required = await self.requirements.is_test_required(ctx, application.class_id)
            await self._transition(ctx, application, event, TransitionFacts(test_required=required))
        self._announce(ctx, application)

    async def schedule_test(self, ctx: TenantContext, command: ScheduleTestCommand) -> None:
        await self._test_step(ctx, command.application_number, AdmissionEvent.SCHEDULE_TEST)

    async def skip_test(self, ctx: TenantContext, command: SkipTestCommand) -> None:
        await self._test_step(ctx, command.application_number, AdmissionEvent.SKIP_TEST)

    async def record_test_result(self, ctx: TenantContext, command: RecordTestResultCommand) -> None:
        event = AdmissionEvent.RECORD_RESULT_PASS if command.passed else AdmissionEvent.RECORD_RESULT_FAIL
        async with unit_of_work(ctx):
            application = await self.applications.lock(ctx, command.application_number)
            await self._transition(ctx, application, event)
        self._announce(ctx, application)

    async def calculate_fee(self, ctx: TenantContext, command: CalculateFeeCommand) -> FeeBreakdown:
        """Fire `calculateFee` and return the computed breakdown"""
        number = command.application_number
        async with self.locks.hold(ctx.tenant_id, number):
            async with unit_of_work(ctx):
                application = await self.applications.lock(ctx, number)
                invoiced = await self.invoices.exists_for_application(ctx, number)
                await self._transition(ctx, application, AdmissionEvent.CALCULATE_FEE, TransitionFacts(invoice_exists=invoiced))
                breakdown = await self.fee_engine.calculate_for(ctx, application)
        self._announce(ctx, application)
        if breakdown.rejected_codes:
            self.publisher.publish(ctx.tenant_id, number, "discount_code.rejected")
        return breakdown

    async def issue_invoice(self, ctx: TenantContext, command: IssueInvoiceCommand) -> Invoice:
        """
        Calculate fees and issue the invoice while holding the application lock.

        Duplicate requests fail fast with AlreadyInvoicedError before any fee
        calculation is re-run.
        """
        number = command.application_number
        async with self.locks.hold(ctx.tenant_id, number):
            application = await self.applications.get_by_number(ctx, number)
            if await self.invoices.exists_for_application(ctx, number):
                record_duplicate_invoice("already_invoiced")
                raise AlreadyInvoicedError(number)
            ensure_not_admitted(application)
            next_status(application.status, AdmissionEvent.ISSUE_INVOICE)

            breakdown = await self.fee_engine.calculate_for(ctx, application)
            invoice = await self.invoice_generator.issue(ctx, number, breakdown)

        self.publisher.publish(ctx.tenant_id, number, "invoice.issued")
        return invoice

    async def confirm_admission(self, ctx: TenantContext, command: ConfirmAdmissionCommand) -> None:
        async with unit_of_work(ctx):
            application = await self.applications.lock(ctx, command.application_number)
            await self._transition(ctx, application, AdmissionEvent.CONFIRM_ADMISSION)
        self._announce(ctx, application)

    # ---- queries -------------------------------------------------------

    async def preview_fee(self, ctx: TenantContext, query: CalculateFeeQuery) -> FeeBreakdown:
        application = await self.applications.get_by_number(ctx, query.application_number)
        return await self.fee_engine.calculate_for(ctx, application)

    async def view_application(self, ctx: TenantContext, query: ViewApplicationQuery) -> ApplicationSnapshot:
        application = await self.applications.get_by_number(ctx, query.application_number)
        return await self._snapshot(ctx, application)

    async def list_applications(self, ctx: TenantContext, query: ListApplicationsQuery) -> List[ApplicationSnapshot]:
        criteria = ApplicationFilter(
            statuses=list(query.statuses),
            session_id=query.session_id,
            class_id=query.class_id,
            created_from=query.created_from,
            created_to=query.created_to,
            limit=query.limit,
            offset=query.offset,
        )
        return [await self._snapshot(ctx, application) for application in await self.applications.find_by_filter(ctx, criteria)]

    async def export_applications(self, ctx: TenantContext, query: ExportApplicationsQuery) -> str:
        """Feed the listing to the report export port; returns the exporter's reference"""
        if self.exporter is None:
            raise ValidationError("No report exporter configured", errors={"report_name": query.report_name})

        rows: List[Dict[str, Any]] = []
        for snapshot in await self.list_applications(ctx, query):
            application = snapshot.application
            rows.append(
                {
                    "application_number": application.application_number,
                    "status": application.status.value,
                    "student_name": " ".join(filter(None, [application.student_first_name, application.student_last_name])),
                    "guardian_name": application.guardian_name,
                    "session_id": application.session_id,
                    "class_section_id": application.class_section_id,
                    "fee_total": str(snapshot.fees.total) if snapshot.fees else None,
                    "invoice_number": snapshot.invoice.invoice_number if snapshot.invoice else None,
                }
            )
        return await self.exporter.export(ctx.tenant_id, query.report_name, rows)
