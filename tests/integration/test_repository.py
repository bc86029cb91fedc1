# pylint: disable=redefined-outer-name
"""
Integration tests against a real (SQLite) database.

Tests verify that:
1. Patient upserts stay idempotent on (tenant_id, external_id)
2. Repository filters (active keys, modification window) run in SQL
3. Delivery and sync logs round-trip and are served by the views
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError

from lab_integration import views
from lab_integration.domain import model
from lab_integration.domain.commands import SyncPatientData, UpsertPatient
from lab_integration.domain.events import ResultStatusChanged
from lab_integration.domain.exceptions import AuthenticationError, NotFoundError
from lab_integration.service_layer import auth, messagebus
from lab_integration.service_layer.unit_of_work import SqlAlchemyUnitOfWork

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 31, tzinfo=timezone.utc)


@pytest.fixture
def sql_uow(sqlite_session_factory, fake_delivery_client):
    return SqlAlchemyUnitOfWork(sqlite_session_factory, delivery_client_impl=fake_delivery_client)


@pytest.fixture
def seeded_uow(sql_uow, make_integration):
    with sql_uow:
        sql_uow.session.add(make_integration())
        sql_uow.session.add(make_integration(id="int-fhir", type=model.FHIR, endpoint="http://emr.example/fhir",
                                             api_key="fhir-key"))
        sql_uow.session.add(make_integration(id="int-off", api_key="retired-key", active=False))
        sql_uow.commit()
    return sql_uow


def _patient(external_id, last_modified, tenant_id="tenant-1"):
    return model.PatientRecord(
        id=f"id-{external_id}",
        tenant_id=tenant_id,
        external_id=external_id,
        last_name=external_id,
        created_at=last_modified,
        last_modified=last_modified,
    )


class TestPatientUpsert:

    def test_repeated_upsert_keeps_one_row(self, sql_uow):
        first = UpsertPatient(tenant_id="tenant-1", external_id="PAT-7", fields={"first_name": "Jane"})
        second = UpsertPatient(tenant_id="tenant-1", external_id="PAT-7", fields={"first_name": "Janet"})

        [first_id] = messagebus.handle(first, sql_uow)
        [second_id] = messagebus.handle(second, sql_uow)

        assert first_id == second_id
        with sql_uow:
            rows = sql_uow.session.query(model.PatientRecord).all()
            assert len(rows) == 1
            assert rows[0].id == first_id
            assert rows[0].first_name == "Janet"

    def test_list_modified_between_is_inclusive_and_tenant_scoped(self, sql_uow):
        with sql_uow:
            for patient in [
                _patient("P1", START),
                _patient("P2", END),
                _patient("OLD", START - timedelta(seconds=1)),
                _patient("NEW", END + timedelta(seconds=1)),
                _patient("ELSEWHERE", START + timedelta(days=1), tenant_id="tenant-2"),
            ]:
                sql_uow.session.add(patient)
            sql_uow.commit()

        with sql_uow:
            found = sorted(p.external_id for p in sql_uow.patients.list_modified_between("tenant-1", START, END))

        assert found == ["P1", "P2"]


class TestIntegrationRepository:

    def test_inactive_keys_do_not_authenticate(self, seeded_uow):
        assert auth.authenticate("fhir-key", seeded_uow).id == "int-fhir"
        with pytest.raises(AuthenticationError):
            auth.authenticate("retired-key", seeded_uow)

    def test_active_integrations_of_a_tenant(self, seeded_uow):
        with seeded_uow:
            ids = sorted(i.id for i in seeded_uow.integrations.list_active_for_tenant("tenant-1"))

        assert ids == ["int-fhir", "int-hl7"]

    def test_active_api_key_is_unique(self, seeded_uow, make_integration):
        with pytest.raises(IntegrityError):
            with seeded_uow:
                seeded_uow.session.add(make_integration(id="int-copy", api_key="inbound-key"))
                seeded_uow.commit()

    def test_retired_api_key_may_repeat(self, seeded_uow, make_integration):
        with seeded_uow:
            seeded_uow.session.add(make_integration(id="int-off-2", api_key="retired-key", active=False))
            seeded_uow.commit()

        with seeded_uow:
            assert seeded_uow.integrations.get("int-off-2").api_key == "retired-key"


class TestResultRepository:

    def _seed(self, uow):
        with uow:
            uow.results.add(model.LabResult(id="res-pending", tenant_id="tenant-1", order_id="ORD-42",
                                            patient_id="PAT-7", status=model.PENDING))
            uow.results.add(model.LabResult(id="res-done", tenant_id="tenant-1", order_id="ORD-42",
                                            patient_id="PAT-7", status=model.COMPLETED, completed_at=START))
            uow.commit()

    def test_latest_for_order_prefers_completed_result(self, sql_uow):
        self._seed(sql_uow)

        with sql_uow:
            latest = sql_uow.results.latest_for_order("tenant-1", "ORD-42")
            assert latest.id == "res-done"

    def test_latest_for_order_sorts_unfinished_results_last(self, sql_uow, sqlite_session_factory):
        self._seed(sql_uow)
        statements = []
        engine = sqlite_session_factory.kw["bind"]

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(engine, "before_cursor_execute", record)
        try:
            with sql_uow:
                sql_uow.results.latest_for_order("tenant-1", "ORD-42")
        finally:
            event.remove(engine, "before_cursor_execute", record)

        assert any("NULLS LAST" in s for s in statements)


class TestLogsAndViews:

    def test_failed_sync_is_logged_and_served(self, seeded_uow, fake_delivery_client):
        fake_delivery_client.failing_endpoints.add("http://emr.example/fhir/Patient/P2")
        with seeded_uow:
            seeded_uow.session.add(_patient("P1", START + timedelta(days=1)))
            seeded_uow.session.add(_patient("P2", START + timedelta(days=2)))
            seeded_uow.commit()

        [summary] = messagebus.handle(
            SyncPatientData(integration_id="int-fhir", start_date=START, end_date=END, performed_by="user-1",
                            role="ADMIN"),
            seeded_uow,
        )

        assert (summary.total_records, summary.synced_count, summary.error_count) == (2, 1, 1)
        logs = views.integration_logs("int-fhir", seeded_uow)
        [failure] = logs["delivery_logs"]
        assert failure["kind"] == model.PATIENT_SYNC
        assert failure["patient_id"] == "id-P2"
        assert "503" in failure["error"]
        [entry] = logs["sync_logs"]
        assert (entry["total_records"], entry["synced_count"], entry["error_count"]) == (2, 1, 1)
        assert entry["performed_by"] == "user-1"

    def test_completed_result_failure_is_logged(self, seeded_uow, fake_delivery_client):
        fake_delivery_client.failing_endpoints.add("http://emr.example/hl7")
        with seeded_uow:
            seeded_uow.results.add(model.LabResult(
                id="res-1",
                tenant_id="tenant-1",
                order_id="ORD-42",
                patient_id="PAT-7",
                status=model.COMPLETED,
                completed_at=START,
            ))
            seeded_uow.commit()

        messagebus.handle(
            ResultStatusChanged(result_id="res-1", tenant_id="tenant-1", previous_status="preliminary",
                                status=model.COMPLETED),
            seeded_uow,
        )

        assert [s["endpoint"] for s in fake_delivery_client.sent_to("http://emr.example/fhir")] == [
            "http://emr.example/fhir"
        ]
        [failure] = views.integration_logs("int-hl7", seeded_uow)["delivery_logs"]
        assert failure["result_id"] == "res-1"
        assert failure["kind"] == model.RESULT_TRANSMISSION
        assert views.integration_logs("int-fhir", seeded_uow)["delivery_logs"] == []

    def test_logs_of_unknown_integration(self, seeded_uow):
        with pytest.raises(NotFoundError):
            views.integration_logs("missing", seeded_uow)
