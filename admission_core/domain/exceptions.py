"""Domain-specific exceptions"""

from typing import Dict, Iterable, List, Optional


class AdmissionError(Exception):
    """Base exception for the admission core"""

    code = "admission_error"
    # Callers may treat retryable errors as "someone else already did it"
    retryable = False


class TenantNotFoundError(AdmissionError):
    """Tenant id is empty, unknown or disabled"""

    code = "tenant_not_found"

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant not found or disabled: {tenant_id!r}")
        self.tenant_id = tenant_id


class NotFoundError(AdmissionError):
    """Application or document does not exist in the tenant's store"""

    code = "not_found"

    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} not found: {key}")
        self.entity = entity
        self.key = key


class InvalidTransitionError(AdmissionError):
    """Requested event is not allowed from the application's current status"""

    code = "invalid_transition"

    def __init__(self, status: str, event: str, reason: Optional[str] = None):
        message = f"Cannot apply {event!r} to an application in status {status!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.status = status
        self.event = event
        self.reason = reason


class AlreadyAdmittedError(InvalidTransitionError):
    """Application is already admitted and cannot be mutated"""

    code = "already_admitted"


class MissingDocumentsError(AdmissionError):
    """Mandatory documents have not been uploaded"""

    code = "missing_documents"

    def __init__(self, application_number: str, missing: Iterable[str]):
        self.application_number = application_number
        self.missing: List[str] = sorted(missing)
        super().__init__(
            f"Application {application_number} is missing documents: {', '.join(self.missing)}"
        )


class AlreadyInvoicedError(AdmissionError):
    """An invoice already exists for the application"""

    code = "already_invoiced"
    retryable = True

    def __init__(self, application_number: str):
        super().__init__(f"Application {application_number} is already invoiced")
        self.application_number = application_number


class ConcurrentModificationError(AdmissionError):
    """Another request changed the application first"""

    code = "concurrent_modification"
    retryable = True

    def __init__(self, application_number: str, detail: Optional[str] = None):
        message = f"Application {application_number} was modified concurrently"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.application_number = application_number


class ImmutableRecordError(AdmissionError):
    """Attempt to edit or delete an issued invoice"""

    code = "immutable_record"

    def __init__(self, table: str, operation: str):
        super().__init__(f"Refusing {operation} on immutable table {table}")
        self.table = table
        self.operation = operation


class ValidationError(AdmissionError):
    """Input fields are malformed or required fields are missing"""

    code = "validation_error"

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = errors or {}
