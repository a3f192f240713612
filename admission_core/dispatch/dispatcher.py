"""Command/query dispatcher - routes messages to handlers inside a tenant scope"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Type

import pydantic

from admission_core.config import settings
from admission_core.domain.exceptions import AdmissionError, ValidationError
from admission_core.dispatch.messages import (
    CalculateFeeCommand,
    CalculateFeeQuery,
    ConfirmAdmissionCommand,
    CreateEnquiryCommand,
    ExportApplicationsQuery,
    IssueInvoiceCommand,
    ListApplicationsQuery,
    Message,
    RecordTestResultCommand,
    ScheduleTestCommand,
    SkipTestCommand,
    SubmitApplicationCommand,
    UploadDocumentCommand,
    VerifyDocumentsCommand,
    ViewApplicationQuery,
)
from admission_core.infrastructure.clients.notifications import NotificationPublisher
from admission_core.infrastructure.clients.reports import ReportExportPort
from admission_core.infrastructure.database.session import TenantContext, TenantContextResolver, TenantRegistry
from admission_core.infrastructure.observability.logging import log_dispatch, setup_logging
from admission_core.infrastructure.observability.metrics import dispatch_duration_histogram
from admission_core.services.admissions import AdmissionService

# Setup structured logging
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)

Handler = Callable[[TenantContext, Any], Awaitable[Any]]


class Dispatcher:
    """
    Routes commands and queries to their handlers.

    Every dispatch resolves the message's tenant, opens a fresh session on
    that tenant's store and closes it again, whatever the outcome.
    """

    def __init__(self, resolver: TenantContextResolver):
        self.resolver = resolver
        self._handlers: Dict[Type[Message], Handler] = {}
        self._by_name: Dict[str, Type[Message]] = {}

    def register(self, message_type: Type[Message], handler: Handler) -> None:
        self._handlers[message_type] = handler
        self._by_name[message_type.__name__] = message_type

    def handles(self, message_type: Type[Message]) -> bool:
        return message_type in self._handlers

    async def dispatch(self, message: Message) -> Any:
        """
        Run the handler registered for the message's type.

        Raises:
            TenantNotFoundError: Unknown or disabled tenant
            ValidationError: No handler registered for the message type
            AdmissionError: Whatever the handler raises
        """
        message_type = type(message).__name__
        handler = self._handlers.get(type(message))
        if handler is None:
            raise ValidationError(f"No handler registered for {message_type}", errors={"message_type": message_type})

        start_time = time.time()
        outcome = "ok"
        error_code = None
        try:
            async with self.resolver.scope(message.tenant_id) as ctx:
                return await handler(ctx, message)
        except AdmissionError as e:
            outcome = "rejected"
            error_code = e.code
            raise
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception:
            outcome = "error"
            logger.exception(f"Unhandled error dispatching {message_type}", extra={"tenant_id": message.tenant_id})
            raise
        finally:
            duration = time.time() - start_time
            dispatch_duration_histogram.labels(message_type=message_type, outcome=outcome).observe(duration)
            log_dispatch(message_type, message.tenant_id, duration * 1000, outcome, error_code)

    async def dispatch_payload(self, message_type: str, payload: Mapping[str, Any]) -> Any:
        """
        Build a message from a raw payload and dispatch it.

        Raises:
            ValidationError: Unknown message type or payload fails model validation
        """
        model = self._by_name.get(message_type)
        if model is None:
            raise ValidationError(f"Unknown message type {message_type}", errors={"message_type": message_type})

        try:
            message = model.model_validate(payload)
        except pydantic.ValidationError as e:
            errors = {".".join(str(part) for part in err["loc"]) or "__root__": err["msg"] for err in e.errors()}
            raise ValidationError(f"Invalid {message_type} payload", errors=errors) from e

        return await self.dispatch(message)


def create_dispatcher(
    resolver: Optional[TenantContextResolver] = None,
    service: Optional[AdmissionService] = None,
    publisher: Optional[NotificationPublisher] = None,
    exporter: Optional[ReportExportPort] = None,
) -> Dispatcher:
    """Create and wire the dispatcher with every admission command and query"""
    resolver = resolver or TenantContextResolver(TenantRegistry.from_settings(settings))
    service = service or AdmissionService(publisher=publisher, exporter=exporter)

    dispatcher = Dispatcher(resolver)

    # Commands
    dispatcher.register(CreateEnquiryCommand, service.create_enquiry)
    dispatcher.register(SubmitApplicationCommand, service.submit_application)
    dispatcher.register(UploadDocumentCommand, service.upload_document)
    dispatcher.register(VerifyDocumentsCommand, service.verify_documents)
    dispatcher.register(ScheduleTestCommand, service.schedule_test)
    dispatcher.register(SkipTestCommand, service.skip_test)
    dispatcher.register(RecordTestResultCommand, service.record_test_result)
    dispatcher.register(CalculateFeeCommand, service.calculate_fee)
    dispatcher.register(IssueInvoiceCommand, service.issue_invoice)
    dispatcher.register(ConfirmAdmissionCommand, service.confirm_admission)

    # Queries
    dispatcher.register(CalculateFeeQuery, service.preview_fee)
    dispatcher.register(ViewApplicationQuery, service.view_application)
    dispatcher.register(ListApplicationsQuery, service.list_applications)
    dispatcher.register(ExportApplicationsQuery, service.export_applications)

    return dispatcher
