import logging
import uuid

from lab_integration.domain import model
from lab_integration.domain.commands import (
    AnswerQuery,
    CreateOrder,
    IngestDiagnosticReport,
    UpsertPatient,
)
from lab_integration.domain.exceptions import ProcessingError, UnsupportedQueryError
from lab_integration.service_layer import queries
from lab_integration.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

REPORT_STATUSES = {
    "final": "completed",
    "amended": "completed",
    "corrected": "completed",
    "appended": "completed",
    "preliminary": "preliminary",
    "partial": "preliminary",
    "cancelled": "cancelled",
    "entered-in-error": "cancelled",
}


def create_order(command: CreateOrder, uow: AbstractUnitOfWork) -> str:
    """
    Register a pending order received from an external system.

    Returns:
        order_id: id of the stored order
    """
    logger.info(f"Creating {command.source} order {command.external_id} for tenant {command.tenant_id}")

    with uow:
        order = model.Order(
            id=str(uuid.uuid4()),
            tenant_id=command.tenant_id,
            external_id=command.external_id,
            patient_external_id=command.patient_external_id,
            ordering_provider=command.ordering_provider,
            tests=list(command.tests),
            priority=command.priority,
            clinical_info=command.clinical_info,
            source=command.source,
            status=model.PENDING,
            received_at=model.utcnow(),
        )
        order_id = uow.orders.create(order)
        uow.commit()

    logger.info(f"Stored order {order_id} (external id {command.external_id})")
    return order_id


def upsert_patient(command: UpsertPatient, uow: AbstractUnitOfWork) -> str:
    """
    Create or update the patient keyed by (tenant_id, external_id).

    Repeated messages for the same key update the one existing record.

    Returns:
        patient_id: id of the created or updated record
    """
    with uow:
        patient_id, created = uow.patients.upsert_by_external_id(
            command.tenant_id,
            command.external_id,
            command.fields,
            model.utcnow(),
        )
        uow.commit()

    logger.info(f"{'Created' if created else 'Updated'} patient {patient_id} (external id {command.external_id})")
    return patient_id


def answer_query(command: AnswerQuery, uow: AbstractUnitOfWork) -> model.QueryResult:
    """
    Answer a RESULT_STATUS or PATIENT_RESULTS query.

    Raises:
        UnsupportedQueryError: for any other query type
    """
    logger.info(f"Answering {command.query_type} query {command.query_id}")

    with uow:
        service = queries.ResultQueryService(uow.results)
        if command.query_type == queries.RESULT_STATUS:
            if not command.order_id:
                raise ProcessingError("RESULT_STATUS query has no order id")
            results = service.result_status(command.order_id, command.tenant_id)
        elif command.query_type == queries.PATIENT_RESULTS:
            if not command.patient_id:
                raise ProcessingError("PATIENT_RESULTS query has no patient id")
            results = service.patient_results(command.patient_id, command.date_range, command.tenant_id)
        else:
            raise UnsupportedQueryError(f"Unsupported query type: {command.query_type or '(empty)'}")
        results = [model.detached(r) for r in results]

    return model.QueryResult(query_id=command.query_id, query_type=command.query_type, results=results)


def ingest_diagnostic_report(command: IngestDiagnosticReport, uow: AbstractUnitOfWork) -> str:
    """
    Store a lab result reported as a FHIR DiagnosticReport.

    Upserts by (tenant_id, external_id). The FHIR report status is folded
    into the result status vocabulary; unknown statuses become pending.

    Returns:
        result_id: id of the created or updated result
    """
    status = REPORT_STATUSES.get(command.status, model.PENDING)

    with uow:
        result = uow.results.get_by_external_id(command.tenant_id, command.external_id)
        if result is None:
            result = model.LabResult(
                id=str(uuid.uuid4()),
                tenant_id=command.tenant_id,
                order_id=command.order_id,
                patient_id=command.patient_id,
                external_id=command.external_id,
                source=model.FHIR,
            )
        result.order_id = command.order_id or result.order_id
        result.patient_id = command.patient_id or result.patient_id
        result.status = status
        result.test_code = command.test_code
        result.test_name = command.test_name
        result.observations = list(command.observations)
        result.conclusion = command.conclusion
        if status == model.COMPLETED:
            result.completed_at = command.completed_at or result.completed_at or model.utcnow()
        result_id = uow.results.add(result)
        uow.commit()

    logger.info(f"Stored result {result_id} (external id {command.external_id}) as {status}")
    return result_id
