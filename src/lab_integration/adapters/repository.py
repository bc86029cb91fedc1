import abc
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from lab_integration.domain import model

logger = logging.getLogger(__name__)


class AbstractIntegrationRepository(abc.ABC):

    def get(self, integration_id: str) -> Optional[model.Integration]:
        return self._get(integration_id)

    def get_active_by_api_key(self, api_key: str) -> Optional[model.Integration]:
        return self._get_active_by_api_key(api_key)

    def list_active_for_tenant(
        self, tenant_id: str, types: Sequence[str] = model.INTEGRATION_TYPES
    ) -> List[model.Integration]:
        return self._list_active_for_tenant(tenant_id, types)

    @abc.abstractmethod
    def _get(self, integration_id: str) -> Optional[model.Integration]:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_active_by_api_key(self, api_key: str) -> Optional[model.Integration]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_active_for_tenant(self, tenant_id: str, types: Sequence[str]) -> List[model.Integration]:
        raise NotImplementedError


class AbstractOrderRepository(abc.ABC):

    def create(self, order: model.Order) -> str:
        self._add(order)
        return order.id

    def get(self, order_id: str) -> Optional[model.Order]:
        return self._get(order_id)

    @abc.abstractmethod
    def _add(self, order: model.Order):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, order_id: str) -> Optional[model.Order]:
        raise NotImplementedError


class AbstractPatientRepository(abc.ABC):

    def get_by_external_id(self, tenant_id: str, external_id: str) -> Optional[model.PatientRecord]:
        return self._get_by_external_id(tenant_id, external_id)

    def upsert_by_external_id(
        self, tenant_id: str, external_id: str, fields: Dict[str, Any], modified_at: datetime
    ) -> Tuple[str, bool]:
        """
        Idempotent on (tenant_id, external_id):
        - create a record with a new id and created_at when none exists
        - otherwise update the existing record in place, keeping its id
        Returns: (patient_id, created)
        """
        existing = self._get_by_external_id(tenant_id, external_id)
        if existing:
            existing.update(fields, modified_at)
            self._add(existing)
            return existing.id, False

        patient = model.PatientRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            external_id=external_id,
            created_at=modified_at,
        )
        patient.update(fields, modified_at)
        self._add(patient)
        return patient.id, True

    def list_modified_between(self, tenant_id: str, start: datetime, end: datetime) -> List[model.PatientRecord]:
        return self._list_modified_between(tenant_id, start, end)

    @abc.abstractmethod
    def _add(self, patient: model.PatientRecord):
        raise NotImplementedError

    @abc.abstractmethod
    def _get_by_external_id(self, tenant_id: str, external_id: str) -> Optional[model.PatientRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_modified_between(self, tenant_id: str, start: datetime, end: datetime) -> List[model.PatientRecord]:
        raise NotImplementedError


class AbstractResultRepository(abc.ABC):

    def add(self, result: model.LabResult) -> str:
        self._add(result)
        return result.id

    def get(self, result_id: str) -> Optional[model.LabResult]:
        return self._get(result_id)

    def get_by_external_id(self, tenant_id: str, external_id: str) -> Optional[model.LabResult]:
        return self._get_by_external_id(tenant_id, external_id)

    def latest_for_order(self, tenant_id: str, order_id: str) -> Optional[model.LabResult]:
        return self._latest_for_order(tenant_id, order_id)

    def list_for_patient(
        self,
        tenant_id: str,
        patient_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[model.LabResult]:
        return self._list_for_patient(tenant_id, patient_id, start, end)

    @abc.abstractmethod
    def _add(self, result: model.LabResult):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, result_id: str) -> Optional[model.LabResult]:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_by_external_id(self, tenant_id: str, external_id: str) -> Optional[model.LabResult]:
        raise NotImplementedError

    @abc.abstractmethod
    def _latest_for_order(self, tenant_id: str, order_id: str) -> Optional[model.LabResult]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_for_patient(
        self, tenant_id: str, patient_id: str, start: Optional[datetime], end: Optional[datetime]
    ) -> List[model.LabResult]:
        raise NotImplementedError


class AbstractLogRepository(abc.ABC):
    """Append-only delivery and sync audit trail."""

    def add_delivery_log(self, entry: model.DeliveryLogEntry):
        self._add(entry)

    def add_sync_log(self, entry: model.SyncLogEntry):
        self._add(entry)

    def list_delivery_logs(self, integration_id: str, limit: int = 100) -> List[model.DeliveryLogEntry]:
        return self._list(model.DeliveryLogEntry, integration_id, limit)

    def list_sync_logs(self, integration_id: str, limit: int = 100) -> List[model.SyncLogEntry]:
        return self._list(model.SyncLogEntry, integration_id, limit)

    @abc.abstractmethod
    def _add(self, entry):
        raise NotImplementedError

    @abc.abstractmethod
    def _list(self, entry_type, integration_id: str, limit: int) -> List:
        raise NotImplementedError


class SqlAlchemyIntegrationRepository(AbstractIntegrationRepository):
    def __init__(self, session):
        self.session = session

    def _get(self, integration_id):
        return self.session.query(model.Integration).filter_by(id=integration_id).first()

    def _get_active_by_api_key(self, api_key):
        return self.session.query(model.Integration).filter_by(api_key=api_key, active=True).first()

    def _list_active_for_tenant(self, tenant_id, types):
        return (
            self.session.query(model.Integration)
            .filter_by(tenant_id=tenant_id, active=True)
            .filter(model.Integration.type.in_(list(types)))
            .all()
        )


class SqlAlchemyOrderRepository(AbstractOrderRepository):
    def __init__(self, session):
        self.session = session

    def _add(self, order):
        self.session.add(order)

    def _get(self, order_id):
        return self.session.query(model.Order).filter_by(id=order_id).first()


class SqlAlchemyPatientRepository(AbstractPatientRepository):
    def __init__(self, session):
        self.session = session

    def _add(self, patient):
        self.session.add(patient)

    def _get_by_external_id(self, tenant_id, external_id):
        return (
            self.session.query(model.PatientRecord)
            .filter_by(tenant_id=tenant_id, external_id=external_id)
            .first()
        )

    def _list_modified_between(self, tenant_id, start, end):
        return (
            self.session.query(model.PatientRecord)
            .filter_by(tenant_id=tenant_id)
            .filter(model.PatientRecord.last_modified >= start)
            .filter(model.PatientRecord.last_modified <= end)
            .all()
        )


class SqlAlchemyResultRepository(AbstractResultRepository):
    def __init__(self, session):
        self.session = session

    def _add(self, result):
        self.session.add(result)

    def _get(self, result_id):
        return self.session.query(model.LabResult).filter_by(id=result_id).first()

    def _get_by_external_id(self, tenant_id, external_id):
        return (
            self.session.query(model.LabResult)
            .filter_by(tenant_id=tenant_id, external_id=external_id)
            .first()
        )

    def _latest_for_order(self, tenant_id, order_id):
        return (
            self.session.query(model.LabResult)
            .filter_by(tenant_id=tenant_id, order_id=order_id)
            .order_by(model.LabResult.completed_at.desc().nulls_last())
            .first()
        )

    def _list_for_patient(self, tenant_id, patient_id, start, end):
        query = self.session.query(model.LabResult).filter_by(tenant_id=tenant_id, patient_id=patient_id)
        if start is not None:
            query = query.filter(model.LabResult.completed_at >= start)
        if end is not None:
            query = query.filter(model.LabResult.completed_at <= end)
        return query.order_by(model.LabResult.completed_at).all()


class SqlAlchemyLogRepository(AbstractLogRepository):
    def __init__(self, session):
        self.session = session

    def _add(self, entry):
        self.session.add(entry)

    def _list(self, entry_type, integration_id, limit):
        return (
            self.session.query(entry_type)
            .filter_by(integration_id=integration_id)
            .order_by(entry_type.timestamp.desc())
            .limit(limit)
            .all()
        )
