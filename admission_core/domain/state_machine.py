"""Admission lifecycle state machine"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from admission_core.domain.exceptions import (
    AlreadyAdmittedError,
    AlreadyInvoicedError,
    InvalidTransitionError,
    MissingDocumentsError,
    ValidationError,
)
from admission_core.domain.models import AdmissionEvent, Application, ApplicationStatus

S = ApplicationStatus
E = AdmissionEvent

TRANSITIONS: Dict[Tuple[ApplicationStatus, AdmissionEvent], ApplicationStatus] = {
    (S.ENQUIRY, E.SUBMIT): S.APPLIED,
    (S.APPLIED, E.UPLOAD_DOCUMENTS): S.DOCUMENTS_PENDING,
    (S.DOCUMENTS_PENDING, E.VERIFY): S.VERIFIED,
    (S.VERIFIED, E.SCHEDULE_TEST): S.TEST_SCHEDULED,
    (S.VERIFIED, E.SKIP_TEST): S.APPROVED,
    (S.TEST_SCHEDULED, E.RECORD_RESULT_PASS): S.APPROVED,
    (S.TEST_SCHEDULED, E.RECORD_RESULT_FAIL): S.REJECTED,
    (S.APPROVED, E.CALCULATE_FEE): S.FEE_CALCULATED,
    (S.FEE_CALCULATED, E.ISSUE_INVOICE): S.INVOICED,
    (S.INVOICED, E.CONFIRM_ADMISSION): S.ADMITTED,
}


@dataclass(frozen=True)
class TransitionFacts:
    """Externally loaded facts the guards need (documents, class policy, invoices)"""

    missing_documents: Tuple[str, ...] = ()
    test_required: bool = False
    invoice_exists: bool = False


def next_status(status: ApplicationStatus, event: AdmissionEvent) -> ApplicationStatus:
    """Look up the target status, failing for any pair outside the table"""
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(status.value, event.value) from None


def allowed_events(status: ApplicationStatus) -> List[AdmissionEvent]:
    return [event for (source, event) in TRANSITIONS if source == status]


def check_guard(application: Application, event: AdmissionEvent, facts: TransitionFacts) -> None:
    """Raise the guard's typed error when the transition's precondition does not hold"""
    status = application.status.value

    if event == E.SUBMIT:
        missing = application.missing_required_fields()
        if missing:
            raise ValidationError(
                "Required fields missing for submission",
                errors={name: "required" for name in missing},
            )
    elif event == E.VERIFY:
        if facts.missing_documents:
            raise MissingDocumentsError(application.application_number, facts.missing_documents)
    elif event == E.SCHEDULE_TEST:
        if not facts.test_required:
            raise InvalidTransitionError(status, event.value, "entrance test not required for class")
    elif event == E.SKIP_TEST:
        if facts.test_required:
            raise InvalidTransitionError(status, event.value, "entrance test required for class")
    elif event in (E.CALCULATE_FEE, E.ISSUE_INVOICE):
        if facts.invoice_exists:
            raise AlreadyInvoicedError(application.application_number)


def apply_transition(
    application: Application,
    event: AdmissionEvent,
    facts: Optional[TransitionFacts] = None,
    now: Optional[datetime] = None,
) -> ApplicationStatus:
    """
    Validate and apply an event to the application in place.

    The target and guard are both evaluated before anything is assigned, so a
    failed transition leaves the application untouched.

    Returns:
        The new status
    """
    target = next_status(application.status, event)
    check_guard(application, event, facts or TransitionFacts())

    application.status = target
    if target == S.APPROVED:
        application.approved = True
    elif target == S.REJECTED:
        application.approved = False
    elif target == S.ADMITTED:
        application.completed = True
    application.updated_at = now or datetime.now(timezone.utc)
    return target


def ensure_not_admitted(application: Application) -> None:
    """Single guard every mutating command runs before touching an application"""
    if application.status == S.ADMITTED or application.completed:
        raise AlreadyAdmittedError(
            application.status.value, "mutate", f"application {application.application_number} already admitted"
        )
