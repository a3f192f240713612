"""SQLAlchemy ORM models for a tenant's admission store"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import declarative_base, relationship

from admission_core.domain.exceptions import ImmutableRecordError

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApplicationRecord(Base):
    """Admission application row; version column backs optimistic locking"""

    __tablename__ = "admission_application"
    __table_args__ = (
        UniqueConstraint("tenant_id", "application_number", name="uq_application_tenant_number"),
        Index("ix_application_tenant_session", "tenant_id", "session_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    application_number = Column(String(64), nullable=False)
    session_id = Column(String(32), nullable=False)
    class_id = Column(String(32), nullable=False)
    section = Column(String(32), nullable=True)
    student_type_id = Column(String(32), nullable=True)

    student_first_name = Column(Text, nullable=True)
    student_last_name = Column(Text, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    gender = Column(String(16), nullable=True)

    guardian_name = Column(Text, nullable=True)
    guardian_phone = Column(String(32), nullable=True, index=True)
    guardian_email = Column(String(255), nullable=True, index=True)

    referral_code = Column(String(64), nullable=True)
    promo_code = Column(String(64), nullable=True)

    status = Column(String(32), nullable=False, default="enquiry")
    approved = Column(Boolean, nullable=False, default=False)
    completed = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    documents = relationship("DocumentRecord", back_populates="application", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}


class DocumentRecord(Base):
    """Uploaded document reference; one row per document type"""

    __tablename__ = "admission_document"
    __table_args__ = (UniqueConstraint("application_id", "document_type", name="uq_document_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, ForeignKey("admission_application.id", ondelete="CASCADE"), nullable=False)
    document_type = Column(String(64), nullable=False)
    document_ref = Column(Text, nullable=False)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    application = relationship("ApplicationRecord", back_populates="documents")


class InvoiceRecord(Base):
    """Issued invoice; at most one per (tenant, application)"""

    __tablename__ = "admission_invoice"
    __table_args__ = (
        UniqueConstraint("tenant_id", "application_number", name="uq_invoice_application"),
        UniqueConstraint("tenant_id", "billing_period", "sequence_number", name="uq_invoice_sequence"),
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_number"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(64), nullable=False, index=True)
    application_id = Column(Integer, ForeignKey("admission_application.id"), nullable=False)
    application_number = Column(String(64), nullable=False)
    invoice_number = Column(String(64), nullable=False)
    billing_period = Column(String(6), nullable=False)
    sequence_number = Column(BigInteger, nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    lines = relationship(
        "InvoiceLineRecord",
        back_populates="invoice",
        order_by="InvoiceLineRecord.position",
        lazy="selectin",
    )


class InvoiceLineRecord(Base):
    """Snapshot of one fee line item at issuance time"""

    __tablename__ = "admission_invoice_line"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(String(36), ForeignKey("admission_invoice.id"), nullable=False)
    position = Column(Integer, nullable=False)
    fee_type = Column(String(32), nullable=False)
    group_id = Column(String(32), nullable=False)
    name = Column(Text, nullable=False)
    base_amount = Column(Numeric(12, 2), nullable=False)
    tax_percent = Column(Numeric(6, 3), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    final_amount = Column(Numeric(12, 2), nullable=False)
    discount_sources = Column(JSON, nullable=False, default=list)

    invoice = relationship("InvoiceRecord", back_populates="lines")


class SequenceCounter(Base):
    """Named per-tenant counter; the locked row is the only source of next values"""

    __tablename__ = "admission_sequence_counter"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_sequence_tenant_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    name = Column(String(64), nullable=False)
    current_value = Column(BigInteger, nullable=False, default=0)


class FeeScheduleEntry(Base):
    """Base fee for a session and class or class-section"""

    __tablename__ = "admission_fee_schedule"
    __table_args__ = (Index("ix_fee_schedule_lookup", "tenant_id", "session_id", "class_section_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    session_id = Column(String(32), nullable=False)
    class_section_id = Column(String(64), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    fee_type = Column(String(32), nullable=False)
    group_id = Column(String(32), nullable=False)
    name = Column(Text, nullable=False)
    base_amount = Column(Numeric(12, 2), nullable=False)
    tax_percent = Column(Numeric(6, 3), nullable=False, default=0)


class DiscountRuleRecord(Base):
    """Sibling, referral, promo-code or staff discount rule"""

    __tablename__ = "admission_discount_rule"
    __table_args__ = (Index("ix_discount_rule_lookup", "tenant_id", "source", "rule_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    source = Column(String(16), nullable=False)
    rule_key = Column(String(64), nullable=True)  # code or student type id
    kind = Column(String(16), nullable=False)
    value = Column(Numeric(12, 3), nullable=False)
    fee_type = Column(String(32), nullable=True)
    approved = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)


class DocumentRequirement(Base):
    """Document type a class expects at verification"""

    __tablename__ = "admission_document_requirement"
    __table_args__ = (UniqueConstraint("tenant_id", "class_id", "document_type", name="uq_requirement"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    class_id = Column(String(32), nullable=False)
    document_type = Column(String(64), nullable=False)
    mandatory = Column(Boolean, nullable=False, default=True)


class ClassPolicy(Base):
    """Per-class admission policy"""

    __tablename__ = "admission_class_policy"
    __table_args__ = (UniqueConstraint("tenant_id", "class_id", name="uq_class_policy"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    class_id = Column(String(32), nullable=False)
    entrance_test_required = Column(Boolean, nullable=False, default=False)


# Issued invoices are corrected with new entries, never edited in place
@event.listens_for(InvoiceRecord, "before_update")
@event.listens_for(InvoiceLineRecord, "before_update")
def _refuse_invoice_update(mapper, connection, target):
    state = inspect(target)
    if any(state.attrs[attr.key].history.has_changes() for attr in mapper.column_attrs):
        raise ImmutableRecordError(mapper.class_.__tablename__, "update")


@event.listens_for(InvoiceRecord, "before_delete")
@event.listens_for(InvoiceLineRecord, "before_delete")
def _refuse_invoice_delete(mapper, connection, target):
    raise ImmutableRecordError(mapper.class_.__tablename__, "delete")
