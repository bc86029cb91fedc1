# pylint: disable=redefined-outer-name
import threading
from datetime import datetime, timezone

import pytest

from lab_integration.adapters import repository
from lab_integration.adapters.delivery_client import AbstractDeliveryClient
from lab_integration.domain import model
from lab_integration.domain.exceptions import DeliveryError
from lab_integration.service_layer.unit_of_work import AbstractUnitOfWork


class FakeIntegrationRepository(repository.AbstractIntegrationRepository):
    def __init__(self, integrations=()):
        self._integrations = list(integrations)

    def add(self, integration):
        self._integrations.append(integration)

    def _get(self, integration_id):
        return next((i for i in self._integrations if i.id == integration_id), None)

    def _get_active_by_api_key(self, api_key):
        return next((i for i in self._integrations if i.api_key == api_key and i.active), None)

    def _list_active_for_tenant(self, tenant_id, types):
        return [i for i in self._integrations if i.tenant_id == tenant_id and i.active and i.type in types]


class FakeOrderRepository(repository.AbstractOrderRepository):
    def __init__(self):
        self._orders = []

    def list(self):
        return list(self._orders)

    def _add(self, order):
        self._orders.append(order)

    def _get(self, order_id):
        return next((o for o in self._orders if o.id == order_id), None)


class FakePatientRepository(repository.AbstractPatientRepository):
    def __init__(self, patients=()):
        self._patients = list(patients)

    def list(self):
        return list(self._patients)

    def _add(self, patient):
        if patient not in self._patients:
            self._patients.append(patient)

    def _get_by_external_id(self, tenant_id, external_id):
        return next(
            (p for p in self._patients if p.tenant_id == tenant_id and p.external_id == external_id),
            None,
        )

    def _list_modified_between(self, tenant_id, start, end):
        return [p for p in self._patients if p.tenant_id == tenant_id and start <= p.last_modified <= end]


class FakeResultRepository(repository.AbstractResultRepository):
    def __init__(self, results=()):
        self._results = list(results)

    def list(self):
        return list(self._results)

    def _add(self, result):
        if result not in self._results:
            self._results.append(result)

    def _get(self, result_id):
        return next((r for r in self._results if r.id == result_id), None)

    def _get_by_external_id(self, tenant_id, external_id):
        return next(
            (r for r in self._results if r.tenant_id == tenant_id and r.external_id == external_id),
            None,
        )

    def _latest_for_order(self, tenant_id, order_id):
        matches = [r for r in self._results if r.tenant_id == tenant_id and r.order_id == order_id]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return max(matches, key=lambda r: r.completed_at or epoch, default=None)

    def _list_for_patient(self, tenant_id, patient_id, start, end):
        return [
            r for r in self._results
            if r.tenant_id == tenant_id and r.patient_id == patient_id
            and (start is None or (r.completed_at and r.completed_at >= start))
            and (end is None or (r.completed_at and r.completed_at <= end))
        ]


class FakeLogRepository(repository.AbstractLogRepository):
    def __init__(self):
        self.entries = []

    @property
    def delivery_logs(self):
        return [e for e in self.entries if isinstance(e, model.DeliveryLogEntry)]

    @property
    def sync_logs(self):
        return [e for e in self.entries if isinstance(e, model.SyncLogEntry)]

    def _add(self, entry):
        self.entries.append(entry)

    def _list(self, entry_type, integration_id, limit):
        matches = [e for e in self.entries if isinstance(e, entry_type) and e.integration_id == integration_id]
        return list(reversed(matches))[:limit]


class FakeDeliveryClient(AbstractDeliveryClient):
    """
    Records sends and whether a unit of work was open during each;
    endpoints listed in failing_endpoints raise DeliveryError.
    """

    def __init__(self, failing_endpoints=()):
        self.failing_endpoints = set(failing_endpoints)
        self.sent = []
        self._lock = threading.Lock()
        self.uow = None

    def sent_to(self, endpoint):
        return [s for s in self.sent if s["endpoint"] == endpoint]

    def _record(self, **call):
        call["in_transaction"] = bool(self.uow and self.uow.in_transaction)
        with self._lock:
            self.sent.append(call)
        if call["endpoint"] in self.failing_endpoints:
            raise DeliveryError(f"HTTP 503 from {call['endpoint']}")

    def send_hl7(self, endpoint, api_key, message):
        self._record(protocol=model.HL7, endpoint=endpoint, credential=api_key, payload=message, method="POST")

    def send_fhir(self, endpoint, token, resource, method="POST"):
        self._record(protocol=model.FHIR, endpoint=endpoint, credential=token, payload=resource, method=method)


class FakeUnitOfWork(AbstractUnitOfWork):
    def __init__(self, integrations=(), patients=(), results=(), delivery_client_impl=None):
        self.integrations = FakeIntegrationRepository(integrations)
        self.orders = FakeOrderRepository()
        self.patients = FakePatientRepository(patients)
        self.results = FakeResultRepository(results)
        self.logs = FakeLogRepository()
        self.delivery_client = delivery_client_impl or FakeDeliveryClient()
        self.committed = False
        self.in_transaction = False
        if isinstance(self.delivery_client, FakeDeliveryClient):
            self.delivery_client.uow = self

    def __enter__(self):
        self.in_transaction = True
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.in_transaction = False

    def _commit(self):
        self.committed = True

    def rollback(self):
        pass


def _new_integration(**overrides):
    fields = dict(
        id="int-hl7",
        tenant_id="tenant-1",
        name="Ward EMR",
        type=model.HL7,
        endpoint="http://emr.example/hl7",
        api_key="inbound-key",
        outbound_api_key="outbound-key",
        active=True,
        receiving_application="WARD_EMR",
    )
    fields.update(overrides)
    return model.Integration(**fields)


@pytest.fixture
def make_integration():
    return _new_integration


@pytest.fixture
def make_uow():
    return FakeUnitOfWork


@pytest.fixture
def fake_delivery_client():
    return FakeDeliveryClient()


@pytest.fixture
def integration():
    return _new_integration()


@pytest.fixture
def uow(integration, fake_delivery_client):
    return FakeUnitOfWork(integrations=[integration], delivery_client_impl=fake_delivery_client)


@pytest.fixture
def sqlite_session_factory():
    """Create SQLite in-memory database shared across threads for fast testing."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker, clear_mappers
    from sqlalchemy.pool import StaticPool
    from lab_integration.adapters import orm

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orm.metadata.create_all(engine)
    orm.start_mappers()

    yield sessionmaker(bind=engine)

    clear_mappers()
    engine.dispose()
