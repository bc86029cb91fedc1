"""Unit tests for the inbound router."""

import json
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from lab_integration.adapters import fhir_codec, hl7_codec
from lab_integration.domain import model
from lab_integration.domain.messages import AckMessage
from lab_integration.service_layer import router

ORM = "\r".join([
    "MSH|^~\\&|WARD_EMR|NORTH|LABFLOW|LAB|20240105083000||ORM^O01|MSG00042|P|2.5.1",
    "PID|1||PAT-7^^^NORTH^PI||Doe^Jane||19800102|F",
    "ORC|NW|ORD-42",
    "OBR|1|ORD-42||2345-7^Glucose^LN",
])

ADT = "\r".join([
    "MSH|^~\\&|WARD_EMR|NORTH|LABFLOW|LAB|20240105083000||ADT^A08|ADT0001|P|2.5.1",
    "PID|1||PAT-7^^^NORTH^PI||Doe^Jane||19800102|F",
])

QRY_RESULT_STATUS = "\r".join([
    "MSH|^~\\&|WARD_EMR|NORTH|LABFLOW|LAB|20240105083000||QRY^R02|QRY0001|P|2.5.1",
    "QRD|20240105083000|R|I|Q-1||||PAT-7|RESULT_STATUS|ORD-42",
])


def _counting(parse):
    return Mock(wraps=parse)


class TestReceiveHL7:

    def test_valid_orm_is_acked_with_its_control_id(self, uow):
        response = router.receive_hl7(ORM, "inbound-key", uow)

        assert response.status_code == 200
        ack = hl7_codec.parse_hl7(response.body)
        assert isinstance(ack, AckMessage)
        assert ack.status == "AA"
        assert ack.control_id == "MSG00042"
        [order] = uow.orders.list()
        assert order.external_id == "ORD-42"
        assert order.source == model.HL7
        assert order.status == model.PENDING
        assert order.tenant_id == "tenant-1"

    @pytest.mark.parametrize("api_key", [None, "", "wrong-key"])
    def test_bad_key_is_rejected_before_parsing(self, uow, api_key):
        parse = _counting(hl7_codec.parse_hl7)

        response = router.receive_hl7(ORM, api_key, uow, parse=parse)

        assert response.status_code == 401
        assert response.body == "Unauthorized"
        assert parse.call_count == 0
        assert uow.orders.list() == []

    def test_inactive_integration_key_is_rejected(self, make_uow, make_integration):
        uow = make_uow(integrations=[make_integration(active=False)])
        parse = _counting(hl7_codec.parse_hl7)

        response = router.receive_hl7(ORM, "inbound-key", uow, parse=parse)

        assert response.status_code == 401
        assert parse.call_count == 0

    def test_unsupported_type_gets_bare_400(self, uow):
        raw = "MSH|^~\\&|A|B|C|D|20240105||DFT^P03|X1|P|2.5.1\rPID|1||PAT-7"

        response = router.receive_hl7(raw, "inbound-key", uow)

        assert response.status_code == 400
        assert response.body == "Unsupported message type"

    def test_unparseable_body_gets_unknown_nack(self, uow):
        response = router.receive_hl7("this is not hl7", "inbound-key", uow)

        assert response.status_code == 500
        ack = hl7_codec.parse_hl7(response.body)
        assert ack.status == "AE"
        assert ack.control_id == "UNKNOWN"

    def test_malformed_body_nack_keeps_recovered_control_id(self, uow):
        raw = "MSH|^~\\&|A|B|C|D|20240105||ADT^A08|CTRL-10|P|2.5.1"

        response = router.receive_hl7(raw, "inbound-key", uow)

        assert response.status_code == 500
        assert hl7_codec.parse_hl7(response.body).control_id == "CTRL-10"

    def test_handler_failure_gets_nack(self, uow):
        uow.orders.create = Mock(side_effect=RuntimeError("db down"))

        response = router.receive_hl7(ORM, "inbound-key", uow)

        assert response.status_code == 500
        ack = hl7_codec.parse_hl7(response.body)
        assert ack.status == "AE"
        assert ack.control_id == "MSG00042"
        assert ack.error_message == "Failed to process message"

    def test_handler_failure_does_not_echo_internal_error_text(self, uow):
        leaked = "INSERT INTO patients (last_name) VALUES ('Jane Doe')"
        uow.patients.upsert_by_external_id = Mock(side_effect=RuntimeError(leaked))

        response = router.receive_hl7(ADT, "inbound-key", uow)

        assert response.status_code == 500
        assert "INSERT INTO" not in response.body
        assert "Jane Doe" not in response.body
        assert hl7_codec.parse_hl7(response.body).error_message == "Failed to process message"

    def test_integration_error_text_is_returned_to_sender(self, uow):
        raw = QRY_RESULT_STATUS.replace("RESULT_STATUS", "BILLING")

        response = router.receive_hl7(raw, "inbound-key", uow)

        assert "BILLING" in hl7_codec.parse_hl7(response.body).error_message

    def test_repeated_adt_updates_one_patient(self, uow):
        router.receive_hl7(ADT, "inbound-key", uow)
        response = router.receive_hl7(ADT.replace("Doe^Jane", "Doe^Janet"), "inbound-key", uow)

        assert response.status_code == 200
        [patient] = uow.patients.list()
        assert patient.first_name == "Janet"

    def test_result_status_query_returns_rsp_with_status(self, make_uow, make_integration):
        result = model.LabResult(
            id="res-1",
            tenant_id="tenant-1",
            order_id="ORD-42",
            patient_id="PAT-7",
            status=model.COMPLETED,
            completed_at=datetime(2024, 1, 5, tzinfo=timezone.utc),
        )
        uow = make_uow(integrations=[make_integration()], results=[result])

        response = router.receive_hl7(QRY_RESULT_STATUS, "inbound-key", uow)

        assert response.status_code == 200
        segs = hl7_codec.segments(response.body)
        assert segs[0][9] == "RSP^K11^RSP_K11"
        orc = next(s for s in segs if s[0] == "ORC")
        assert orc[5] == "completed"

    def test_unknown_query_type_gets_nack(self, uow):
        raw = QRY_RESULT_STATUS.replace("RESULT_STATUS", "BILLING")

        response = router.receive_hl7(raw, "inbound-key", uow)

        assert response.status_code == 500
        assert hl7_codec.parse_hl7(response.body).status == "AE"


class TestReceiveFHIR:

    @pytest.fixture
    def fhir_uow(self, make_uow, make_integration):
        return make_uow(integrations=[make_integration(id="int-fhir", type=model.FHIR, api_key="fhir-key")])

    def test_bad_key_is_rejected_before_parsing(self, fhir_uow):
        parse = _counting(fhir_codec.parse_fhir)

        response = router.receive_fhir('{"resourceType": "Patient", "id": "p"}', "nope", fhir_uow, parse=parse)

        assert response.status_code == 401
        assert response.body == {"error": "Unauthorized"}
        assert parse.call_count == 0

    def test_patient_with_typo_fields_is_created(self, fhir_uow):
        body = json.dumps({"resourceType": "Patient", "id": "PAT-7", "gendr": "female", "nmae": "Jane"})

        response = router.receive_fhir(body, "fhir-key", fhir_uow)

        assert response.status_code == 201
        assert response.body["resourceType"] == "OperationOutcome"
        assert response.body["issue"][0]["severity"] == "information"
        [patient] = fhir_uow.patients.list()
        assert patient.external_id == "PAT-7"

    def test_service_request_creates_fhir_order(self, fhir_uow):
        body = json.dumps({
            "resourceType": "ServiceRequest",
            "identifier": [{"value": "ORD-43"}],
            "subject": {"reference": "Patient/PAT-7"},
        })

        response = router.receive_fhir(body, "fhir-key", fhir_uow)

        assert response.status_code == 201
        [order] = fhir_uow.orders.list()
        assert order.source == model.FHIR
        assert order.patient_external_id == "PAT-7"

    @pytest.mark.parametrize("fhir_status, status", [
        ("final", "completed"),
        ("amended", "completed"),
        ("partial", "preliminary"),
        ("entered-in-error", "cancelled"),
        ("registered", "pending"),
    ])
    def test_diagnostic_report_status_is_mapped(self, fhir_uow, fhir_status, status):
        body = json.dumps({
            "resourceType": "DiagnosticReport",
            "id": "dr-1",
            "status": fhir_status,
            "subject": {"reference": "Patient/PAT-7"},
            "basedOn": [{"reference": "ServiceRequest/ORD-42"}],
        })

        response = router.receive_fhir(body, "fhir-key", fhir_uow)

        assert response.status_code == 201
        [result] = fhir_uow.results.list()
        assert result.status == status
        assert result.order_id == "ORD-42"

    def test_unsupported_resource_type_gets_bare_400(self, fhir_uow):
        response = router.receive_fhir('{"resourceType": "Encounter"}', "fhir-key", fhir_uow)

        assert response.status_code == 400
        assert response.body == {"error": "Unsupported resource type"}

    def test_invalid_json_gets_error_outcome(self, fhir_uow):
        response = router.receive_fhir("{oops", "fhir-key", fhir_uow)

        assert response.status_code == 500
        assert response.body["issue"][0]["severity"] == "error"

    def test_handler_failure_gets_error_outcome(self, fhir_uow):
        body = json.dumps({"resourceType": "Patient", "id": "PAT-7"})

        with patch("lab_integration.service_layer.messagebus.COMMAND_HANDLERS", {}):
            response = router.receive_fhir(body, "fhir-key", fhir_uow)

        assert response.status_code == 500
        assert response.body["resourceType"] == "OperationOutcome"
        assert response.body["issue"][0]["severity"] == "error"

    def test_handler_failure_outcome_does_not_echo_internal_error_text(self, fhir_uow):
        leaked = "INSERT INTO patients (last_name) VALUES ('Jane Doe')"
        fhir_uow.patients.upsert_by_external_id = Mock(side_effect=RuntimeError(leaked))
        body = json.dumps({"resourceType": "Patient", "id": "PAT-7", "name": [{"family": "Doe"}]})

        response = router.receive_fhir(body, "fhir-key", fhir_uow)

        assert response.status_code == 500
        assert "INSERT INTO" not in json.dumps(response.body)
        assert "Jane Doe" not in json.dumps(response.body)
        assert response.body["issue"][0]["details"]["text"] == "Failed to process resource"

    def test_deeply_nested_json_gets_error_outcome(self, fhir_uow):
        body = '{"resourceType":"Patient","id":"p","x":' + "[" * 100000 + "]" * 100000 + "}"

        response = router.receive_fhir(body, "fhir-key", fhir_uow)

        assert response.status_code == 500
        assert response.body["resourceType"] == "OperationOutcome"
        assert response.body["issue"][0]["code"] == "invalid"
