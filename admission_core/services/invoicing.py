"""Invoice generation - exactly one invoice per application"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from admission_core.config import settings
from admission_core.domain.exceptions import AlreadyInvoicedError, ConcurrentModificationError, ValidationError
from admission_core.domain.models import AdmissionEvent, ApplicationStatus, FeeBreakdown, Invoice
from admission_core.domain.state_machine import TransitionFacts, apply_transition, ensure_not_admitted
from admission_core.infrastructure.database.repositories import (
    ApplicationRepository,
    InvoiceRepository,
    SequenceRepository,
)
from admission_core.infrastructure.database.session import TenantContext, unit_of_work
from admission_core.infrastructure.observability.logging import log_invoice_issued, log_transition
from admission_core.infrastructure.observability.metrics import (
    invoice_counter,
    record_duplicate_invoice,
    record_transition,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApplicationLocks:
    """In-process exclusive lock per (tenant, application); entries are dropped when idle"""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, tenant_id: str, application_number: str) -> AsyncIterator[None]:
        key = (tenant_id, application_number)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


def format_invoice_number(prefix: str, period: str, sequence: int, width: Optional[int] = None) -> str:
    """NORTH-202406-00042"""
    if width is None:
        width = settings.invoice_number_width
    return f"{prefix}-{period}-{sequence:0{width}d}"


class InvoiceGenerator:
    """Turns a fee breakdown into a persisted, immutable invoice"""

    def __init__(
        self,
        applications: Optional[ApplicationRepository] = None,
        invoices: Optional[InvoiceRepository] = None,
        sequences: Optional[SequenceRepository] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.applications = applications or ApplicationRepository()
        self.invoices = invoices or InvoiceRepository()
        self.sequences = sequences or SequenceRepository()
        self.clock = clock

    async def issue(self, ctx: TenantContext, application_number: str, breakdown: FeeBreakdown) -> Invoice:
        """
        Persist the invoice, its line snapshot and the Invoiced transition atomically.

        Flow:
        1. Re-read the application under a row lock
        2. Refuse if an invoice exists or the status moved past FeeCalculated
        3. Allocate the (tenant, billing period) sequence number
        4. Insert invoice + lines, save the application with its version check
        5. Commit; any failure before the commit leaves nothing behind

        Raises:
            AlreadyInvoicedError: Invoice exists (also on unique-constraint conflict)
            ConcurrentModificationError: Application version moved underneath us
            InvalidTransitionError: Application is not at FeeCalculated
        """
        if breakdown.application_number != application_number:
            raise ValidationError(
                "Fee breakdown belongs to a different application",
                errors={"application_number": breakdown.application_number},
            )

        start_time = time.time()
        try:
            async with unit_of_work(ctx):
                application = await self.applications.lock(ctx, application_number)

                if await self.invoices.exists_for_application(ctx, application_number):
                    raise AlreadyInvoicedError(application_number)
                ensure_not_admitted(application)
                if application.status == ApplicationStatus.INVOICED:
                    raise AlreadyInvoicedError(application_number)

                issued_at = self.clock()
                from_status = application.status
                apply_transition(application, AdmissionEvent.ISSUE_INVOICE, TransitionFacts(), now=issued_at)

                period = issued_at.strftime("%Y%m")
                sequence = await self.sequences.next_value(ctx, f"invoice:{period}")
                invoice = Invoice(
                    invoice_id=str(uuid.uuid4()),
                    invoice_number=format_invoice_number(ctx.tenant.number_prefix, period, sequence),
                    tenant_id=ctx.tenant_id,
                    application_number=application_number,
                    billing_period=period,
                    sequence_number=sequence,
                    total=breakdown.total,
                    line_items=breakdown.line_items,
                    issued_at=issued_at,
                )

                try:
                    await self.invoices.add(ctx, invoice)
                except IntegrityError as e:
                    raise AlreadyInvoicedError(application_number) from e
                await self.applications.save(ctx, application)

        except AlreadyInvoicedError:
            record_duplicate_invoice("already_invoiced")
            record_transition(AdmissionEvent.ISSUE_INVOICE.value, applied=False)
            raise
        except ConcurrentModificationError:
            record_duplicate_invoice("concurrent_modification")
            record_transition(AdmissionEvent.ISSUE_INVOICE.value, applied=False)
            raise

        record_transition(AdmissionEvent.ISSUE_INVOICE.value, applied=True)
        invoice_counter.labels(tenant=ctx.tenant_id).inc()
        log_transition(
            ctx.tenant_id, application_number, AdmissionEvent.ISSUE_INVOICE.value, from_status.value, application.status.value
        )
        duration_ms = (time.time() - start_time) * 1000
        log_invoice_issued(ctx.tenant_id, application_number, invoice.invoice_number, str(invoice.total), duration_ms)
        return invoice
