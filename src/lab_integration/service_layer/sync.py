"""Bulk re-send of a tenant's patients to one integration."""

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import config
from lab_integration.adapters import fhir_codec, hl7_codec
from lab_integration.domain import model
from lab_integration.domain.commands import SyncPatientData
from lab_integration.domain.exceptions import (
    InvalidSyncWindowError,
    NotFoundError,
    PermissionDeniedError,
)
from lab_integration.service_layer import fanout
from lab_integration.service_layer.delivery import RetryPolicy, Target, default_retry_policy, send_to_target
from lab_integration.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

ADMIN = "ADMIN"
INTEGRATION_MANAGER = "INTEGRATION_MANAGER"
SYNC_ROLES = (ADMIN, INTEGRATION_MANAGER)


@dataclass
class SyncSummary:
    success: bool
    total_records: int
    synced_count: int
    error_count: int


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def check_sync_role(role: Optional[str]) -> None:
    if (role or "").upper() not in SYNC_ROLES:
        raise PermissionDeniedError(f"Role {role or '(none)'} may not run patient sync")


def build_patient_payload(patient: model.PatientRecord, integration: model.Integration):
    if integration.type == model.HL7:
        return hl7_codec.build_hl7(
            "ADT",
            patient=patient,
            event_type="A08",
            receiving_application=integration.receiving_application,
            sending_application=config.get_sending_application(),
            sending_facility=config.get_sending_facility(),
        )
    return fhir_codec.to_fhir("Patient", patient)


def patient_endpoint(integration: model.Integration, patient: model.PatientRecord) -> str:
    if integration.type == model.HL7:
        return integration.endpoint
    return f"{integration.endpoint.rstrip('/')}/Patient/{patient.external_id}"


def sync_patient_data(
    command: SyncPatientData,
    uow: AbstractUnitOfWork,
    policy: Optional[RetryPolicy] = None,
    width: Optional[int] = None,
) -> SyncSummary:
    """
    Re-send every patient of the integration's tenant whose last_modified
    falls in [start_date, end_date].

    Per-patient failures are counted and logged, never raised. Exactly one
    SyncLogEntry is written per run.

    Raises:
        PermissionDeniedError: caller role is not ADMIN or INTEGRATION_MANAGER
        InvalidSyncWindowError: start_date is after end_date
        NotFoundError: unknown integration
    """
    check_sync_role(command.role)
    start, end = _as_utc(command.start_date), _as_utc(command.end_date)
    if start > end:
        raise InvalidSyncWindowError(f"Sync window starts after it ends: {start.isoformat()} > {end.isoformat()}")

    policy = policy or default_retry_policy()
    width = width or config.get_sync_concurrency()

    # No HTTP call runs while the session is open
    with uow:
        integration = uow.integrations.get(command.integration_id)
        if integration is None:
            raise NotFoundError(f"Integration {command.integration_id} not found")

        integration_id = integration.id
        client = uow.delivery_client
        patients = uow.patients.list_modified_between(integration.tenant_id, start, end)
        total_records = len(patients)
        logger.info(
            f"Syncing {total_records} patient(s) to integration {integration_id} "
            f"({integration.type}) for {command.performed_by}"
        )

        outcomes = []
        tasks = []
        method = "POST" if integration.type == model.HL7 else "PUT"
        for patient in patients:
            patient_id = patient.id
            try:
                payload = build_patient_payload(patient, integration)
            except Exception as e:  # pylint: disable=broad-except
                logger.exception(f"Could not build sync payload for patient {patient_id}")
                outcomes.append(fanout.Outcome(patient_id, e))
                continue
            target = Target.for_integration(integration, endpoint=patient_endpoint(integration, patient))
            send = functools.partial(send_to_target, client, target, payload, method=method)
            tasks.append((patient_id, functools.partial(policy.run, send)))

    outcomes.extend(fanout.fan_out(tasks, width))

    synced_count = 0
    error_count = 0
    with uow:
        for outcome in outcomes:
            if outcome.ok:
                synced_count += 1
                continue
            error_count += 1
            logger.error(f"Sync of patient {outcome.key} to integration {integration_id} failed: {outcome.error}")
            uow.logs.add_delivery_log(
                model.DeliveryLogEntry(
                    integration_id=integration_id,
                    kind=model.PATIENT_SYNC,
                    patient_id=outcome.key,
                    error=str(outcome.error),
                )
            )

        uow.logs.add_sync_log(
            model.SyncLogEntry(
                integration_id=integration_id,
                total_records=total_records,
                synced_count=synced_count,
                error_count=error_count,
                start_date=start,
                end_date=end,
                performed_by=command.performed_by,
            )
        )
        uow.commit()

    logger.info(f"Sync to {integration_id} finished: {synced_count} synced, {error_count} failed")
    return SyncSummary(
        success=True,
        total_records=total_records,
        synced_count=synced_count,
        error_count=error_count,
    )
