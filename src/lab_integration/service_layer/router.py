"""
Inbound router: authenticate, decode, dispatch, acknowledge.

Every inbound request ends in exactly one InboundResponse. Authentication
runs before the body is decoded. Unsupported message or resource types get
a bare 400; decode and handler failures get a structured NACK or
OperationOutcome.
"""

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable, NamedTuple, Optional, Union

import config
from lab_integration.adapters import fhir_codec, hl7_codec
from lab_integration.domain import model
from lab_integration.domain.commands import (
    AnswerQuery,
    CreateOrder,
    IngestDiagnosticReport,
    UpsertPatient,
)
from lab_integration.domain.exceptions import (
    AuthenticationError,
    IntegrationError,
    MalformedMessageError,
    UnsupportedTypeError,
)
from lab_integration.domain.messages import (
    AdtMessage,
    DiagnosticReportResource,
    FHIRMessage,
    HL7Message,
    OrderData,
    OrderMessage,
    PatientResource,
    QueryMessage,
    ServiceRequestResource,
)
from lab_integration.service_layer import auth, messagebus
from lab_integration.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

TEXT_PLAIN = "text/plain"
APPLICATION_JSON = "application/json"
UNKNOWN_CONTROL_ID = "UNKNOWN"
HL7_FAILURE_TEXT = "Failed to process message"
FHIR_FAILURE_TEXT = "Failed to process resource"

RESOURCE_TYPES = {
    ServiceRequestResource: "ServiceRequest",
    PatientResource: "Patient",
    DiagnosticReportResource: "DiagnosticReport",
}


class InboundResponse(NamedTuple):
    status_code: int
    body: Any
    media_type: str = TEXT_PLAIN


def _order_command(order: OrderData, tenant_id: str, source: str) -> CreateOrder:
    return CreateOrder(
        tenant_id=tenant_id,
        external_id=order.external_id,
        patient_external_id=order.patient.external_id,
        source=source,
        ordering_provider=order.ordering_provider,
        tests=[asdict(t) for t in order.tests],
        priority=order.priority,
        clinical_info=order.clinical_info,
    )


def _parse_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unreadable timestamp {value!r}")
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def hl7_command(message: HL7Message, tenant_id: str):
    """Map a decoded HL7 message to its command; UnsupportedTypeError for anything else."""
    if isinstance(message, OrderMessage):
        return _order_command(message.order, tenant_id, model.HL7)
    if isinstance(message, AdtMessage):
        return UpsertPatient(
            tenant_id=tenant_id,
            external_id=message.patient.external_id,
            fields=message.patient.fields(),
        )
    if isinstance(message, QueryMessage):
        query = message.query
        return AnswerQuery(
            tenant_id=tenant_id,
            query_id=query.query_id,
            query_type=query.query_type,
            order_id=query.order_id,
            patient_id=query.patient_id,
            date_range=query.date_range,
        )
    raise UnsupportedTypeError(f"Unsupported message type: {message.header.message_type}")


def fhir_command(message: FHIRMessage, tenant_id: str):
    """Map a decoded FHIR resource to its command; UnsupportedTypeError for anything else."""
    if isinstance(message, ServiceRequestResource):
        return _order_command(message.order, tenant_id, model.FHIR)
    if isinstance(message, PatientResource):
        return UpsertPatient(
            tenant_id=tenant_id,
            external_id=message.patient.external_id,
            fields=message.patient.fields(),
        )
    if isinstance(message, DiagnosticReportResource):
        report = message.report
        return IngestDiagnosticReport(
            tenant_id=tenant_id,
            external_id=report.external_id,
            status=report.status,
            order_id=report.order_id,
            patient_id=report.patient_id,
            test_code=report.code,
            test_name=report.display,
            observations=[asdict(o) for o in report.observations],
            conclusion=report.conclusion,
            completed_at=_parse_timestamp(report.issued),
        )
    raise UnsupportedTypeError(f"Unsupported resource type: {message.resource_type}")


def _failure_text(error: Exception, default: str) -> str:
    """Text returned to the sender; only integration errors are worded for it."""
    if isinstance(error, IntegrationError) and str(error):
        return str(error)
    return default


def _nack(control_id: Optional[str], error: str, original=None) -> InboundResponse:
    ack = hl7_codec.build_hl7(
        "ACK",
        message_id=control_id or UNKNOWN_CONTROL_ID,
        status="AE",
        error_message=error,
        original=original,
        sending_application=config.get_sending_application(),
        sending_facility=config.get_sending_facility(),
    )
    return InboundResponse(500, ack)


def receive_hl7(
    raw: Union[str, bytes],
    api_key: Optional[str],
    uow: AbstractUnitOfWork,
    parse: Callable[[Union[str, bytes]], HL7Message] = hl7_codec.parse_hl7,
) -> InboundResponse:
    """Process one inbound HL7v2 message and build its HTTP response."""
    try:
        integration = auth.authenticate(api_key, uow)
    except AuthenticationError:
        return InboundResponse(401, "Unauthorized")

    try:
        message = parse(raw)
    except MalformedMessageError as e:
        logger.error(f"Malformed HL7 message from integration {integration.id}: {e}")
        return _nack(e.control_id, str(e))

    header = message.header
    try:
        command = hl7_command(message, integration.tenant_id)
    except UnsupportedTypeError as e:
        logger.warning(f"{e} (control id {header.control_id}, integration {integration.id})")
        return InboundResponse(400, "Unsupported message type")

    logger.info(f"Received HL7 {header.message_type}^{header.trigger_event} {header.control_id}")
    try:
        [result] = messagebus.handle(command, uow)
    except Exception as e:  # pylint: disable=broad-except
        return _nack(header.control_id, _failure_text(e, HL7_FAILURE_TEXT), original=header)

    if isinstance(message, QueryMessage):
        body = hl7_codec.build_hl7(
            "RSP",
            query_result=result,
            original=header,
            sending_application=config.get_sending_application(),
            sending_facility=config.get_sending_facility(),
        )
    else:
        body = hl7_codec.build_hl7(
            "ACK",
            message_id=header.control_id,
            status="AA",
            original=header,
            sending_application=config.get_sending_application(),
            sending_facility=config.get_sending_facility(),
        )
    return InboundResponse(200, body)


def receive_fhir(
    raw: Union[str, bytes],
    api_key: Optional[str],
    uow: AbstractUnitOfWork,
    parse: Callable[[Union[str, bytes]], FHIRMessage] = fhir_codec.parse_fhir,
) -> InboundResponse:
    """Process one inbound FHIR resource and build its HTTP response."""
    try:
        integration = auth.authenticate(api_key, uow)
    except AuthenticationError:
        return InboundResponse(401, {"error": "Unauthorized"}, APPLICATION_JSON)

    try:
        message = parse(raw)
    except MalformedMessageError as e:
        logger.error(f"Malformed FHIR resource from integration {integration.id}: {e}")
        return InboundResponse(500, fhir_codec.operation_outcome("error", "invalid", str(e)), fhir_codec.FHIR_JSON)

    try:
        command = fhir_command(message, integration.tenant_id)
    except UnsupportedTypeError as e:
        logger.warning(f"{e} (integration {integration.id})")
        return InboundResponse(400, {"error": "Unsupported resource type"}, APPLICATION_JSON)

    resource_type = RESOURCE_TYPES[type(message)]
    logger.info(f"Received FHIR {resource_type} from integration {integration.id}")
    try:
        messagebus.handle(command, uow)
    except Exception as e:  # pylint: disable=broad-except
        outcome = fhir_codec.operation_outcome("error", "exception", _failure_text(e, FHIR_FAILURE_TEXT))
        return InboundResponse(500, outcome, fhir_codec.FHIR_JSON)

    outcome = fhir_codec.operation_outcome("information", "informational", f"{resource_type} processed successfully")
    return InboundResponse(201, outcome, fhir_codec.FHIR_JSON)
