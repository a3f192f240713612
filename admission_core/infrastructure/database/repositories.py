"""Data access layer for admission entities; every query is scoped to one tenant"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from admission_core.domain.exceptions import ConcurrentModificationError, NotFoundError
from admission_core.domain.models import (
    Application,
    ApplicationFilter,
    ApplicationStatus,
    DiscountKind,
    DiscountRule,
    DiscountSource,
    Document,
    FeeLineItem,
    Invoice,
)
from admission_core.infrastructure.database.models import (
    ApplicationRecord,
    DiscountRuleRecord,
    DocumentRecord,
    InvoiceLineRecord,
    InvoiceRecord,
    SequenceCounter,
)
from admission_core.infrastructure.database.session import TenantContext

logger = logging.getLogger(__name__)

# Fields a save may overwrite; number, tenant and created_at never change
_MUTABLE_FIELDS = (
    "session_id",
    "class_id",
    "section",
    "student_type_id",
    "student_first_name",
    "student_last_name",
    "date_of_birth",
    "gender",
    "guardian_name",
    "guardian_phone",
    "guardian_email",
    "referral_code",
    "promo_code",
    "approved",
    "completed",
)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(record: ApplicationRecord) -> Application:
    return Application(
        application_number=record.application_number,
        tenant_id=record.tenant_id,
        session_id=record.session_id,
        class_id=record.class_id,
        section=record.section,
        student_type_id=record.student_type_id,
        student_first_name=record.student_first_name,
        student_last_name=record.student_last_name,
        date_of_birth=record.date_of_birth,
        gender=record.gender,
        guardian_name=record.guardian_name,
        guardian_phone=record.guardian_phone,
        guardian_email=record.guardian_email,
        referral_code=record.referral_code,
        promo_code=record.promo_code,
        status=ApplicationStatus(record.status),
        approved=record.approved,
        completed=record.completed,
        version=record.version,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


class ApplicationRepository:
    """Repository for admission applications"""

    async def _find_record(
        self, ctx: TenantContext, application_number: str, for_update: bool = False
    ) -> Optional[ApplicationRecord]:
        stmt = select(ApplicationRecord).where(
            ApplicationRecord.tenant_id == ctx.tenant_id,
            ApplicationRecord.application_number == application_number,
        )
        if for_update:
            # Row lock where the backend supports it, always a fresh read
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await ctx.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_record(
        self, ctx: TenantContext, application_number: str, for_update: bool = False
    ) -> ApplicationRecord:
        record = await self._find_record(ctx, application_number, for_update=for_update)
        if record is None:
            raise NotFoundError("Application", application_number)
        return record

    async def get_by_number(self, ctx: TenantContext, application_number: str) -> Application:
        """
        Fetch an application from the tenant's store.

        Raises:
            NotFoundError: When no application with that number exists for this tenant
        """
        return _to_domain(await self.get_record(ctx, application_number))

    async def lock(self, ctx: TenantContext, application_number: str) -> Application:
        """Re-read the application under an exclusive row lock"""
        return _to_domain(await self.get_record(ctx, application_number, for_update=True))

    async def save(self, ctx: TenantContext, application: Application) -> None:
        """
        Insert or update an application.

        The stored version must match the one the caller loaded; the flush
        bumps it. Application number and created timestamp are never rewritten.

        Raises:
            ConcurrentModificationError: Stale version or duplicate number
        """
        number = application.application_number
        record = await self._find_record(ctx, number, for_update=True)

        if record is None:
            if application.version:
                raise ConcurrentModificationError(number, "application no longer exists")
            record = ApplicationRecord(
                tenant_id=ctx.tenant_id,
                application_number=number,
                created_at=application.created_at or datetime.now(timezone.utc),
            )
            ctx.session.add(record)
        elif record.version != application.version:
            raise ConcurrentModificationError(
                number, f"expected version {application.version}, found {record.version}"
            )

        for name in _MUTABLE_FIELDS:
            setattr(record, name, getattr(application, name))
        record.status = application.status.value
        record.updated_at = application.updated_at or datetime.now(timezone.utc)

        try:
            await ctx.session.flush()
        except StaleDataError as e:
            raise ConcurrentModificationError(number, "version check failed") from e
        except IntegrityError as e:
            raise ConcurrentModificationError(number, "duplicate application number") from e

        application.version = record.version
        application.created_at = as_utc(record.created_at)
        application.updated_at = as_utc(record.updated_at)

    async def find_by_filter(self, ctx: TenantContext, criteria: ApplicationFilter) -> List[Application]:
        """Read-only listing used by reporting callers"""
        stmt = select(ApplicationRecord).where(ApplicationRecord.tenant_id == ctx.tenant_id)
        if criteria.statuses:
            stmt = stmt.where(ApplicationRecord.status.in_([s.value for s in criteria.statuses]))
        if criteria.session_id:
            stmt = stmt.where(ApplicationRecord.session_id == criteria.session_id)
        if criteria.class_id:
            stmt = stmt.where(ApplicationRecord.class_id == criteria.class_id)
        if criteria.created_from:
            stmt = stmt.where(ApplicationRecord.created_at >= criteria.created_from)
        if criteria.created_to:
            stmt = stmt.where(ApplicationRecord.created_at < criteria.created_to)
        stmt = stmt.order_by(ApplicationRecord.id).limit(criteria.limit).offset(criteria.offset)

        result = await ctx.session.execute(stmt)
        return [_to_domain(record) for record in result.scalars().all()]

    async def has_active_sibling(self, ctx: TenantContext, application: Application) -> bool:
        """Another non-rejected application in the same session shares a guardian contact"""
        contacts = []
        if application.guardian_phone:
            contacts.append(ApplicationRecord.guardian_phone == application.guardian_phone)
        if application.guardian_email:
            contacts.append(ApplicationRecord.guardian_email == application.guardian_email)
        if not contacts:
            return False

        stmt = (
            select(ApplicationRecord.id)
            .where(
                and_(
                    ApplicationRecord.tenant_id == ctx.tenant_id,
                    ApplicationRecord.session_id == application.session_id,
                    ApplicationRecord.application_number != application.application_number,
                    ApplicationRecord.status != ApplicationStatus.REJECTED.value,
                    or_(*contacts),
                )
            )
            .limit(1)
        )
        result = await ctx.session.execute(stmt)
        return result.first() is not None


class DocumentRepository:
    """Repository for uploaded documents"""

    def __init__(self, applications: Optional[ApplicationRepository] = None):
        self.applications = applications or ApplicationRepository()

    async def upsert(self, ctx: TenantContext, application_number: str, document: Document) -> None:
        """Store a document; re-uploading a type replaces its reference"""
        application = await self.applications.get_record(ctx, application_number)
        result = await ctx.session.execute(
            select(DocumentRecord).where(
                DocumentRecord.application_id == application.id,
                DocumentRecord.document_type == document.document_type,
            )
        )
        record = result.scalar_one_or_none()
        uploaded_at = document.uploaded_at or datetime.now(timezone.utc)
        if record is None:
            ctx.session.add(
                DocumentRecord(
                    application_id=application.id,
                    document_type=document.document_type,
                    document_ref=document.document_ref,
                    uploaded_at=uploaded_at,
                )
            )
        else:
            record.document_ref = document.document_ref
            record.uploaded_at = uploaded_at
        await ctx.session.flush()

    async def list_for_application(self, ctx: TenantContext, application_number: str) -> List[Document]:
        stmt = (
            select(DocumentRecord)
            .join(ApplicationRecord, DocumentRecord.application_id == ApplicationRecord.id)
            .where(
                ApplicationRecord.tenant_id == ctx.tenant_id,
                ApplicationRecord.application_number == application_number,
            )
            .order_by(DocumentRecord.document_type)
        )
        result = await ctx.session.execute(stmt)
        return [
            Document(
                document_type=record.document_type,
                document_ref=record.document_ref,
                uploaded_at=as_utc(record.uploaded_at),
            )
            for record in result.scalars().all()
        ]


def _invoice_to_domain(record: InvoiceRecord) -> Invoice:
    return Invoice(
        invoice_id=record.id,
        invoice_number=record.invoice_number,
        tenant_id=record.tenant_id,
        application_number=record.application_number,
        billing_period=record.billing_period,
        sequence_number=record.sequence_number,
        total=Decimal(record.total),
        line_items=tuple(
            FeeLineItem(
                fee_type=line.fee_type,
                group_id=line.group_id,
                name=line.name,
                base_amount=Decimal(line.base_amount),
                tax_percent=Decimal(line.tax_percent),
                tax_amount=Decimal(line.tax_amount),
                discount_amount=Decimal(line.discount_amount),
                final_amount=Decimal(line.final_amount),
                discount_sources=tuple(DiscountSource(s) for s in line.discount_sources or ()),
            )
            for line in record.lines
        ),
        issued_at=as_utc(record.issued_at),
    )


class InvoiceRepository:
    """Repository for issued invoices"""

    async def get_for_application(self, ctx: TenantContext, application_number: str) -> Optional[Invoice]:
        result = await ctx.session.execute(
            select(InvoiceRecord).where(
                InvoiceRecord.tenant_id == ctx.tenant_id,
                InvoiceRecord.application_number == application_number,
            )
        )
        record = result.scalar_one_or_none()
        return _invoice_to_domain(record) if record else None

    async def exists_for_application(self, ctx: TenantContext, application_number: str) -> bool:
        result = await ctx.session.execute(
            select(InvoiceRecord.id).where(
                InvoiceRecord.tenant_id == ctx.tenant_id,
                InvoiceRecord.application_number == application_number,
            )
        )
        return result.first() is not None

    async def add(self, ctx: TenantContext, invoice: Invoice) -> None:
        """Insert the invoice and its line snapshot; the unique constraint rejects a second one"""
        application_id = (
            await ctx.session.execute(
                select(ApplicationRecord.id).where(
                    ApplicationRecord.tenant_id == ctx.tenant_id,
                    ApplicationRecord.application_number == invoice.application_number,
                )
            )
        ).scalar_one()
        record = InvoiceRecord(
            id=invoice.invoice_id,
            tenant_id=ctx.tenant_id,
            application_id=application_id,
            application_number=invoice.application_number,
            invoice_number=invoice.invoice_number,
            billing_period=invoice.billing_period,
            sequence_number=invoice.sequence_number,
            total=invoice.total,
            issued_at=invoice.issued_at,
            # Lines go in with the parent insert so the invoice row is never updated
            lines=[
                InvoiceLineRecord(
                    position=position,
                    fee_type=item.fee_type,
                    group_id=item.group_id,
                    name=item.name,
                    base_amount=item.base_amount,
                    tax_percent=item.tax_percent,
                    tax_amount=item.tax_amount,
                    discount_amount=item.discount_amount,
                    final_amount=item.final_amount,
                    discount_sources=[s.value for s in item.discount_sources],
                )
                for position, item in enumerate(invoice.line_items)
            ],
        )
        ctx.session.add(record)
        await ctx.session.flush()


class DiscountRuleRepository:
    """Read-only access to discount reference data"""

    async def _rules(self, ctx: TenantContext, source: DiscountSource, key: Optional[str]) -> List[DiscountRuleRecord]:
        stmt = select(DiscountRuleRecord).where(
            DiscountRuleRecord.tenant_id == ctx.tenant_id,
            DiscountRuleRecord.source == source.value,
            DiscountRuleRecord.active.is_(True),
        )
        if key is not None:
            stmt = stmt.where(DiscountRuleRecord.rule_key == key)
        result = await ctx.session.execute(stmt.order_by(DiscountRuleRecord.id))
        return list(result.scalars().all())

    async def sibling_rules(self, ctx: TenantContext) -> List[DiscountRule]:
        return [_rule_to_domain(r) for r in await self._rules(ctx, DiscountSource.SIBLING, None)]

    async def staff_rules(self, ctx: TenantContext, student_type_id: Optional[str]) -> List[DiscountRule]:
        """Rules keyed by student type; unknown types simply have none"""
        if not student_type_id:
            return []
        return [_rule_to_domain(r) for r in await self._rules(ctx, DiscountSource.STAFF, student_type_id)]

    async def code_rules(
        self, ctx: TenantContext, source: DiscountSource, code: str, at: datetime
    ) -> List[DiscountRule]:
        """Rules for an approved code inside its validity window; empty when the code is invalid"""
        valid = []
        for record in await self._rules(ctx, source, code):
            if not record.approved:
                continue
            valid_from = as_utc(record.valid_from)
            valid_until = as_utc(record.valid_until)
            if valid_from and at < valid_from:
                continue
            if valid_until and at >= valid_until:
                continue
            valid.append(_rule_to_domain(record))
        return valid


def _rule_to_domain(record: DiscountRuleRecord) -> DiscountRule:
    return DiscountRule(
        source=DiscountSource(record.source),
        kind=DiscountKind(record.kind),
        value=Decimal(record.value),
        fee_type=record.fee_type,
        key=record.rule_key,
    )


class SequenceRepository:
    """Monotonic per-tenant counters backed by a locked row (never max()+1)"""

    async def next_value(self, ctx: TenantContext, name: str) -> int:
        """
        Allocate the next value of a named sequence.

        The increment becomes visible only when the caller's transaction
        commits; a rollback returns the value.

        Raises:
            ConcurrentModificationError: Two requests created the counter row at once
        """
        stmt = (
            select(SequenceCounter)
            .where(SequenceCounter.tenant_id == ctx.tenant_id, SequenceCounter.name == name)
            .with_for_update()  # Row-level lock
            .execution_options(populate_existing=True)
        )
        counter = (await ctx.session.execute(stmt)).scalar_one_or_none()

        if counter is None:
            counter = SequenceCounter(tenant_id=ctx.tenant_id, name=name, current_value=1)
            ctx.session.add(counter)
            try:
                await ctx.session.flush()
            except IntegrityError as e:
                raise ConcurrentModificationError(name, "sequence counter created concurrently") from e
        else:
            counter.current_value += 1
            await ctx.session.flush()

        logger.debug("sequence_allocated", extra={"tenant_id": ctx.tenant_id, "sequence_name": name, "value": counter.current_value})
        return counter.current_value
