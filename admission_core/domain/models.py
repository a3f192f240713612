"""Domain models - pure Python dataclasses representing admission entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


class ApplicationStatus(str, Enum):
    """Lifecycle states of an admission application"""

    ENQUIRY = "enquiry"
    APPLIED = "applied"
    DOCUMENTS_PENDING = "documents_pending"
    VERIFIED = "verified"
    TEST_SCHEDULED = "test_scheduled"
    TEST_COMPLETED = "test_completed"
    APPROVED = "approved"
    REJECTED = "rejected"
    FEE_CALCULATED = "fee_calculated"
    INVOICED = "invoiced"
    ADMITTED = "admitted"

    @property
    def is_terminal(self) -> bool:
        return self in (ApplicationStatus.ADMITTED, ApplicationStatus.REJECTED)


class AdmissionEvent(str, Enum):
    """Events that drive the admission state machine"""

    SUBMIT = "submit"
    UPLOAD_DOCUMENTS = "upload_documents"
    VERIFY = "verify"
    SCHEDULE_TEST = "schedule_test"
    SKIP_TEST = "skip_test"
    RECORD_RESULT_PASS = "record_result_pass"
    RECORD_RESULT_FAIL = "record_result_fail"
    CALCULATE_FEE = "calculate_fee"
    ISSUE_INVOICE = "issue_invoice"
    CONFIRM_ADMISSION = "confirm_admission"


class DiscountSource(str, Enum):
    SIBLING = "sibling"
    REFERRAL = "referral"
    PROMO_CODE = "promo_code"
    STAFF = "staff"


class DiscountKind(str, Enum):
    FLAT = "flat"
    PERCENT = "percent"


@dataclass(frozen=True)
class Tenant:
    """Campus whose data lives in its own store"""

    tenant_id: str
    display_name: str
    database_url: str
    invoice_prefix: str = ""
    enabled: bool = True

    @property
    def number_prefix(self) -> str:
        return self.invoice_prefix or self.tenant_id.upper()


@dataclass
class Application:
    """Prospective student's admission record (aggregate root)"""

    application_number: str
    tenant_id: str
    session_id: str
    class_id: str
    section: Optional[str] = None
    student_type_id: Optional[str] = None

    # Student identity
    student_first_name: Optional[str] = None
    student_last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None

    # Parent / guardian identity
    guardian_name: Optional[str] = None
    guardian_phone: Optional[str] = None
    guardian_email: Optional[str] = None

    referral_code: Optional[str] = None
    promo_code: Optional[str] = None

    status: ApplicationStatus = ApplicationStatus.ENQUIRY
    approved: bool = False
    completed: bool = False
    version: int = 0  # 0 until first persisted
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    REQUIRED_FOR_SUBMISSION = (
        "student_first_name",
        "student_last_name",
        "date_of_birth",
        "guardian_name",
        "guardian_phone",
    )

    @property
    def class_section_id(self) -> str:
        if self.section:
            return f"{self.class_id}-{self.section}"
        return self.class_id

    def missing_required_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_FOR_SUBMISSION if not getattr(self, name)]


@dataclass(frozen=True)
class Document:
    """Uploaded admission document"""

    document_type: str
    document_ref: str
    uploaded_at: Optional[datetime] = None


@dataclass(frozen=True)
class FeeEntity:
    """One charge in a class/session fee schedule"""

    fee_type: str  # tuition, transport, activity, ...
    group_id: str
    name: str
    base_amount: Decimal
    tax_percent: Decimal = Decimal("0")


@dataclass(frozen=True)
class DiscountRule:
    """Reference-data rule producing a flat or percentage reduction"""

    source: DiscountSource
    kind: DiscountKind
    value: Decimal
    fee_type: Optional[str] = None  # None applies to every line
    key: Optional[str] = None  # referral/promo code or student type id


@dataclass(frozen=True)
class FeeLineItem:
    """Single computed charge component"""

    fee_type: str
    group_id: str
    name: str
    base_amount: Decimal
    tax_percent: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    discount_sources: Tuple[DiscountSource, ...] = ()


@dataclass(frozen=True)
class FeeBreakdown:
    """Normalized fee calculation result for one application"""

    application_number: str
    session_id: str
    class_section_id: str
    line_items: Tuple[FeeLineItem, ...]
    subtotal: Decimal
    tax_total: Decimal
    discount_total: Decimal
    total: Decimal
    rejected_codes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Invoice:
    """Immutable billing record issued once per application"""

    invoice_id: str
    invoice_number: str
    tenant_id: str
    application_number: str
    billing_period: str  # YYYYMM
    sequence_number: int
    total: Decimal
    line_items: Tuple[FeeLineItem, ...]
    issued_at: datetime


@dataclass
class ApplicationFilter:
    """Read-only query over applications"""

    statuses: List[ApplicationStatus] = field(default_factory=list)
    session_id: Optional[str] = None
    class_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True)
class ApplicationSnapshot:
    """Read model returned to the presentation layer"""

    application: Application
    documents: Tuple[Document, ...]
    fees: Optional[FeeBreakdown]
    invoice: Optional[Invoice]

    @property
    def status(self) -> ApplicationStatus:
        return self.application.status
