"""Unit tests for outbound delivery of completed results."""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from lab_integration.adapters import hl7_codec
from lab_integration.domain import model
from lab_integration.domain.events import ResultStatusChanged
from lab_integration.domain.exceptions import DeliveryError
from lab_integration.service_layer import delivery, fanout, messagebus


@pytest.fixture
def result():
    return model.LabResult(
        id="res-1",
        tenant_id="tenant-1",
        order_id="ORD-42",
        patient_id="PAT-7",
        status=model.COMPLETED,
        test_code="2345-7",
        test_name="Glucose",
        observations=[{"code": "2345-7", "display": "Glucose", "value": 5.4, "unit": "mmol/L"}],
        completed_at=datetime(2024, 1, 5, 9, 30, tzinfo=timezone.utc),
    )


@pytest.fixture
def two_integrations(make_integration):
    return [
        make_integration(id="A", type=model.HL7, endpoint="http://a.example/hl7", outbound_api_key="key-a"),
        make_integration(id="B", type=model.FHIR, endpoint="http://b.example/fhir", outbound_api_key="token-b"),
    ]


def completed(previous_status="preliminary"):
    return ResultStatusChanged(
        result_id="res-1", tenant_id="tenant-1", previous_status=previous_status, status=model.COMPLETED
    )


class TestDeliverCompletedResult:

    def test_one_failing_integration_does_not_affect_another(
        self, make_uow, fake_delivery_client, two_integrations, result
    ):
        fake_delivery_client.failing_endpoints.add("http://b.example/fhir")
        uow = make_uow(integrations=two_integrations, results=[result], delivery_client_impl=fake_delivery_client)

        messagebus.handle(completed(), uow)

        assert len(fake_delivery_client.sent_to("http://a.example/hl7")) == 1
        [entry] = uow.logs.delivery_logs
        assert entry.integration_id == "B"
        assert entry.kind == model.RESULT_TRANSMISSION
        assert entry.status == "failed"
        assert entry.result_id == "res-1"
        assert "503" in entry.error
        assert uow.committed

    def test_sends_oru_to_hl7_and_diagnostic_report_to_fhir(
        self, make_uow, fake_delivery_client, two_integrations, result
    ):
        uow = make_uow(integrations=two_integrations, results=[result], delivery_client_impl=fake_delivery_client)

        outcomes = delivery.deliver_completed_result(completed(), uow, policy=delivery.FireAndForget(), width=2)

        assert all(o.ok for o in outcomes)
        [hl7_call] = fake_delivery_client.sent_to("http://a.example/hl7")
        [fhir_call] = fake_delivery_client.sent_to("http://b.example/fhir")
        assert hl7_call["credential"] == "key-a"
        assert hl7_codec.segments(hl7_call["payload"])[0][9] == "ORU^R01^ORU_R01"
        assert fhir_call["credential"] == "token-b"
        assert fhir_call["method"] == "POST"
        assert fhir_call["payload"]["resourceType"] == "DiagnosticReport"
        assert uow.logs.entries == []

    @pytest.mark.parametrize("previous_status, status", [
        (model.COMPLETED, model.COMPLETED),
        ("pending", "preliminary"),
        (model.COMPLETED, "corrected"),
    ])
    def test_only_the_transition_into_completed_delivers(
        self, make_uow, fake_delivery_client, two_integrations, result, previous_status, status
    ):
        uow = make_uow(integrations=two_integrations, results=[result], delivery_client_impl=fake_delivery_client)
        event = ResultStatusChanged(
            result_id="res-1", tenant_id="tenant-1", previous_status=previous_status, status=status
        )

        delivery.deliver_completed_result(event, uow)

        assert fake_delivery_client.sent == []

    def test_first_write_as_completed_delivers(self, make_uow, fake_delivery_client, two_integrations, result):
        uow = make_uow(integrations=two_integrations, results=[result], delivery_client_impl=fake_delivery_client)

        delivery.deliver_completed_result(completed(previous_status=None), uow)

        assert len(fake_delivery_client.sent) == 2

    def test_inactive_and_other_tenant_integrations_are_skipped(
        self, make_uow, make_integration, fake_delivery_client, result
    ):
        integrations = [
            make_integration(id="on", endpoint="http://on.example"),
            make_integration(id="off", endpoint="http://off.example", active=False),
            make_integration(id="other", endpoint="http://other.example", tenant_id="tenant-2"),
        ]
        uow = make_uow(integrations=integrations, results=[result], delivery_client_impl=fake_delivery_client)

        delivery.deliver_completed_result(completed(), uow)

        assert [s["endpoint"] for s in fake_delivery_client.sent] == ["http://on.example"]

    def test_missing_result_delivers_nothing(self, make_uow, fake_delivery_client, two_integrations):
        uow = make_uow(integrations=two_integrations, delivery_client_impl=fake_delivery_client)

        assert delivery.deliver_completed_result(completed(), uow) == []
        assert fake_delivery_client.sent == []

    def test_unexpected_exception_in_one_send_is_contained(
        self, make_uow, two_integrations, result
    ):
        client = Mock()
        client.send_hl7.side_effect = RuntimeError("socket exploded")
        uow = make_uow(integrations=two_integrations, results=[result], delivery_client_impl=client)

        outcomes = delivery.deliver_completed_result(completed(), uow)

        assert client.send_fhir.call_count == 1
        assert {o.key: o.ok for o in outcomes} == {"A": False, "B": True}
        assert [e.integration_id for e in uow.logs.delivery_logs] == ["A"]

    def test_sends_run_after_the_unit_of_work_is_closed(
        self, make_uow, fake_delivery_client, two_integrations, result
    ):
        fake_delivery_client.failing_endpoints.add("http://b.example/fhir")
        uow = make_uow(integrations=two_integrations, results=[result], delivery_client_impl=fake_delivery_client)

        delivery.deliver_completed_result(completed(), uow, policy=delivery.FireAndForget(), width=2)

        assert [s["in_transaction"] for s in fake_delivery_client.sent] == [False, False]
        assert [e.integration_id for e in uow.logs.delivery_logs] == ["B"]
        assert uow.committed


class TestRetryPolicy:

    def test_fire_and_forget_attempts_once(self):
        send = Mock(side_effect=DeliveryError("down"))

        with pytest.raises(DeliveryError):
            delivery.FireAndForget().run(send)

        assert send.call_count == 1

    def test_exponential_backoff_retries_delivery_errors(self):
        send = Mock(side_effect=[DeliveryError("down"), DeliveryError("down"), None])

        delivery.ExponentialBackoff(max_attempts=3, multiplier=0, max_wait=0).run(send)

        assert send.call_count == 3

    def test_exponential_backoff_gives_up_with_last_error(self):
        send = Mock(side_effect=DeliveryError("still down"))

        with pytest.raises(DeliveryError, match="still down"):
            delivery.ExponentialBackoff(max_attempts=2, multiplier=0, max_wait=0).run(send)

        assert send.call_count == 2

    def test_exponential_backoff_does_not_retry_other_errors(self):
        send = Mock(side_effect=ValueError("bad payload"))

        with pytest.raises(ValueError):
            delivery.ExponentialBackoff(max_attempts=5, multiplier=0, max_wait=0).run(send)

        assert send.call_count == 1

    @pytest.mark.parametrize("attempts, policy_type", [
        ("1", delivery.FireAndForget),
        ("4", delivery.ExponentialBackoff),
    ])
    def test_policy_is_selected_from_config(self, attempts, policy_type):
        with patch.dict("os.environ", {"DELIVERY_MAX_ATTEMPTS": attempts}):
            assert isinstance(delivery.default_retry_policy(), policy_type)


class TestFanOut:

    def test_collects_outcomes_in_task_order(self):
        def fail():
            raise DeliveryError("nope")

        outcomes = fanout.fan_out([("a", lambda: None), ("b", fail), ("c", lambda: None)], width=2)

        assert [o.key for o in outcomes] == ["a", "b", "c"]
        assert [o.ok for o in outcomes] == [True, False, True]
        assert isinstance(outcomes[1].error, DeliveryError)

    def test_no_tasks(self):
        assert fanout.fan_out([], width=4) == []
