"""Pydantic command and query messages accepted by the dispatcher"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from admission_core.domain.models import ApplicationStatus


class StudentFields(BaseModel):
    """Student identity captured on the application"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    first_name: Optional[str] = Field(None, min_length=1, max_length=120)
    last_name: Optional[str] = Field(None, min_length=1, max_length=120)
    date_of_birth: Optional[date] = None
    gender: Optional[str] = Field(None, max_length=16)


class ParentFields(BaseModel):
    """Parent or guardian identity"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone: Optional[str] = Field(None, min_length=5, max_length=32)
    email: Optional[str] = Field(None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Message(BaseModel):
    """Base for every command and query; always names its tenant"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tenant_id: str = Field(..., min_length=1, description="Campus identifier")


class Command(Message):
    """Write request"""


class Query(Message):
    """Read-only request"""


class ApplicationCommand(Command):
    application_number: str = Field(..., min_length=1)


class ApplicationQuery(Query):
    application_number: str = Field(..., min_length=1)


class CreateEnquiryCommand(Command):
    """Record an enquiry; returns the new application number"""

    student_fields: StudentFields = StudentFields()
    parent_fields: ParentFields = ParentFields()
    session_id: str = Field(..., min_length=1)
    class_id: str = Field(..., min_length=1)
    section: Optional[str] = None
    student_type_id: Optional[str] = None
    referral_code: Optional[str] = None
    promo_code: Optional[str] = None


class SubmitApplicationCommand(Command):
    """
    Submit an application; returns its number.

    Without an application number a new enquiry is created and submitted in
    one step, which needs session_id and class_id.
    """

    student_fields: StudentFields
    parent_fields: ParentFields
    application_number: Optional[str] = None
    session_id: Optional[str] = None
    class_id: Optional[str] = None
    section: Optional[str] = None
    student_type_id: Optional[str] = None
    referral_code: Optional[str] = None
    promo_code: Optional[str] = None


class UploadDocumentCommand(ApplicationCommand):
    document_type: str = Field(..., min_length=1, max_length=64)
    document_ref: str = Field(..., min_length=1)


class VerifyDocumentsCommand(ApplicationCommand):
    pass


class ScheduleTestCommand(ApplicationCommand):
    pass


class SkipTestCommand(ApplicationCommand):
    pass


class RecordTestResultCommand(ApplicationCommand):
    passed: bool


class CalculateFeeCommand(ApplicationCommand):
    """Moves an approved application to FeeCalculated and returns the breakdown"""


class IssueInvoiceCommand(ApplicationCommand):
    pass


class ConfirmAdmissionCommand(ApplicationCommand):
    pass


class CalculateFeeQuery(ApplicationQuery):
    """Fee preview; never changes the application"""


class ViewApplicationQuery(ApplicationQuery):
    pass


class ListApplicationsQuery(Query):
    statuses: List[ApplicationStatus] = []
    session_id: Optional[str] = None
    class_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class ExportApplicationsQuery(ListApplicationsQuery):
    report_name: str = Field(..., min_length=1)
