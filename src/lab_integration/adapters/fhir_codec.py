"""FHIR JSON codec - decode inbound resources, build outbound DiagnosticReport / Patient."""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from lab_integration.domain.exceptions import MalformedMessageError
from lab_integration.domain.messages import (
    DiagnosticReportResource,
    FHIRMessage,
    ObservationData,
    OrderData,
    OrderedTest,
    PatientData,
    PatientResource,
    ReportData,
    ServiceRequestResource,
    UnsupportedResource,
)
from lab_integration.domain.model import COMPLETED, LabResult, PatientRecord

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"

IDENTIFIER_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0203"
DIAGNOSTIC_SERVICE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0074"
INTERPRETATION_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ObservationInterpretation"
RESULT_IDENTIFIER_SYSTEM = "urn:labflow:result"
PATIENT_IDENTIFIER_SYSTEM = "urn:labflow:patient"

_GENDERS = ("male", "female", "other", "unknown")
_PRIORITIES = ("routine", "urgent", "asap", "stat")
_REPORT_STATUS = {COMPLETED: "final", "preliminary": "preliminary", "cancelled": "cancelled"}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _reference_id(reference: Any) -> str:
    """{'reference': 'Patient/123'} -> '123'; falls back to a logical identifier."""
    ref = _as_dict(reference)
    target = _text(ref.get("reference"))
    if target:
        return target.rstrip("/").split("/")[-1].lstrip("#")
    return _text(_as_dict(ref.get("identifier")).get("value"))


def _first_coding(concept: Any) -> Dict[str, Any]:
    codings = _as_list(_as_dict(concept).get("coding"))
    return _as_dict(codings[0]) if codings else {}


def _identifier_value(resource: Dict[str, Any], type_code: Optional[str] = None) -> str:
    for identifier in _as_list(resource.get("identifier")):
        identifier = _as_dict(identifier)
        value = _text(identifier.get("value"))
        if not value:
            continue
        if type_code is None or _first_coding(identifier.get("type")).get("code") == type_code:
            return value
    return ""


# ---------- Parsing ----------

def _parse_patient_data(resource: Dict[str, Any]) -> PatientData:
    external_id = _text(resource.get("id")) or _identifier_value(resource)
    if not external_id:
        raise MalformedMessageError("Patient resource has no id or identifier")

    names = [_as_dict(n) for n in _as_list(resource.get("name"))]
    name = next((n for n in names if n.get("use") == "official"), names[0] if names else {})
    given = [g for g in _as_list(name.get("given")) if isinstance(g, str)]

    phone = next(
        (
            _text(_as_dict(t).get("value"))
            for t in _as_list(resource.get("telecom"))
            if _as_dict(t).get("system") == "phone"
        ),
        "",
    )

    addresses = _as_list(resource.get("address"))
    address = {}
    if addresses:
        raw = _as_dict(addresses[0])
        lines = [line for line in _as_list(raw.get("line")) if isinstance(line, str)]
        candidates = {
            "street": lines[0] if lines else "",
            "other": lines[1] if len(lines) > 1 else "",
            "city": _text(raw.get("city")),
            "state": _text(raw.get("state")),
            "postal_code": _text(raw.get("postalCode")),
            "country": _text(raw.get("country")),
        }
        address = {k: v for k, v in candidates.items() if v}

    gender = _text(resource.get("gender")).lower()

    return PatientData(
        external_id=external_id,
        mrn=_identifier_value(resource, "MR"),
        first_name=" ".join(given),
        last_name=_text(name.get("family")),
        date_of_birth=_text(resource.get("birthDate")),
        gender=gender if gender in _GENDERS else "unknown",
        phone=phone,
        address=address,
    )


def _parse_patient(resource: Dict[str, Any]) -> PatientResource:
    patient = _parse_patient_data(resource)
    return PatientResource(resource_id=_text(resource.get("id")) or patient.external_id, patient=patient)


def _parse_service_request(resource: Dict[str, Any]) -> ServiceRequestResource:
    external_id = _identifier_value(resource) or _text(resource.get("id"))
    if not external_id:
        raise MalformedMessageError("ServiceRequest resource has no id or identifier")

    code = _as_dict(resource.get("code"))
    tests = [
        OrderedTest(
            code=_text(_as_dict(c).get("code")),
            name=_text(_as_dict(c).get("display")) or _text(code.get("text")),
            coding_system=_text(_as_dict(c).get("system")),
        )
        for c in _as_list(code.get("coding"))
        if _text(_as_dict(c).get("code"))
    ]

    requester = _as_dict(resource.get("requester"))
    notes = [_text(_as_dict(n).get("text")) for n in _as_list(resource.get("note"))]
    notes += [_text(_as_dict(r).get("text")) for r in _as_list(resource.get("reasonCode"))]

    priority = _text(resource.get("priority")).lower()

    order = OrderData(
        external_id=external_id,
        patient=PatientData(external_id=_reference_id(resource.get("subject"))),
        ordering_provider=_reference_id(requester) or _text(requester.get("display")),
        tests=tests,
        priority=priority if priority in _PRIORITIES else "routine",
        clinical_info="; ".join(n for n in notes if n),
    )
    return ServiceRequestResource(resource_id=_text(resource.get("id")) or external_id, order=order)


def _observation_value(observation: Dict[str, Any]) -> Dict[str, Any]:
    quantity = _as_dict(observation.get("valueQuantity"))
    if quantity:
        return {"value": quantity.get("value", ""), "unit": _text(quantity.get("unit")) or _text(quantity.get("code"))}
    for key in ("valueString", "valueInteger", "valueBoolean", "valueDateTime"):
        if key in observation:
            return {"value": observation[key], "unit": ""}
    concept = _as_dict(observation.get("valueCodeableConcept"))
    if concept:
        return {"value": _text(concept.get("text")) or _text(_first_coding(concept).get("display")), "unit": ""}
    return {"value": "", "unit": ""}


def _reference_range(observation: Dict[str, Any]) -> str:
    ranges = _as_list(observation.get("referenceRange"))
    if not ranges:
        return ""
    rng = _as_dict(ranges[0])
    if _text(rng.get("text")):
        return _text(rng.get("text"))
    low = _as_dict(rng.get("low")).get("value")
    high = _as_dict(rng.get("high")).get("value")
    if low is None and high is None:
        return ""
    return f"{'' if low is None else low}-{'' if high is None else high}"


def _parse_observation(observation: Dict[str, Any]) -> ObservationData:
    coding = _first_coding(observation.get("code"))
    interpretation = _as_list(observation.get("interpretation"))
    value = _observation_value(observation)
    return ObservationData(
        code=_text(coding.get("code")),
        display=_text(coding.get("display")) or _text(_as_dict(observation.get("code")).get("text")),
        value=value["value"],
        unit=value["unit"],
        reference_range=_reference_range(observation),
        flag=_text(_first_coding(interpretation[0]).get("code")) if interpretation else "",
        status=_text(observation.get("status")),
        observed_at=_text(observation.get("effectiveDateTime")),
    )


def _parse_diagnostic_report(resource: Dict[str, Any]) -> DiagnosticReportResource:
    external_id = _identifier_value(resource) or _text(resource.get("id"))
    if not external_id:
        raise MalformedMessageError("DiagnosticReport resource has no id or identifier")

    based_on = _as_list(resource.get("basedOn"))
    coding = _first_coding(resource.get("code"))
    observations = [
        _parse_observation(_as_dict(c))
        for c in _as_list(resource.get("contained"))
        if _as_dict(c).get("resourceType") == "Observation"
    ]

    report = ReportData(
        external_id=external_id,
        status=_text(resource.get("status")).lower(),
        order_id=_reference_id(based_on[0]) if based_on else "",
        patient_id=_reference_id(resource.get("subject")),
        code=_text(coding.get("code")),
        display=_text(coding.get("display")) or _text(_as_dict(resource.get("code")).get("text")),
        observations=observations,
        conclusion=_text(resource.get("conclusion")),
        issued=_text(resource.get("issued")) or _text(resource.get("effectiveDateTime")),
    )
    return DiagnosticReportResource(resource_id=_text(resource.get("id")) or external_id, report=report)


_RESOURCE_PARSERS = {
    "ServiceRequest": _parse_service_request,
    "Patient": _parse_patient,
    "DiagnosticReport": _parse_diagnostic_report,
}  # type: Dict[str, Callable[[Dict[str, Any]], FHIRMessage]]


def parse_fhir(raw: Union[str, bytes]) -> FHIRMessage:
    """
    Decode a FHIR JSON resource. Unknown fields are ignored.

    Raises:
        MalformedMessageError: body is not a JSON object, is nested too deeply
            or has no resourceType.
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else (raw or "")
        resource = json.loads(text)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedMessageError(f"Body is not valid JSON: {e}") from e
    except RecursionError as e:
        raise MalformedMessageError("JSON body is nested too deeply") from e

    if not isinstance(resource, dict):
        raise MalformedMessageError("FHIR body must be a JSON object")

    resource_type = resource.get("resourceType")
    if not isinstance(resource_type, str) or not resource_type:
        raise MalformedMessageError("FHIR resource has no resourceType")

    parser = _RESOURCE_PARSERS.get(resource_type)
    if parser is None:
        return UnsupportedResource(resource_type=resource_type)
    return parser(resource)


# ---------- Building ----------

def _isoformat(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _observation_resource(index: int, obs: Dict[str, Any]) -> Dict[str, Any]:
    resource = {
        "resourceType": "Observation",
        "id": f"obs-{index}",
        "status": "final",
        "code": {
            "coding": [{"code": obs.get("code", ""), "display": obs.get("display", "")}],
            "text": obs.get("display") or obs.get("code", ""),
        },
    }
    value = obs.get("value", "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        resource["valueQuantity"] = {"value": value, "unit": obs.get("unit", "")}
    else:
        resource["valueString"] = "" if value is None else str(value)
    if obs.get("reference_range"):
        resource["referenceRange"] = [{"text": obs["reference_range"]}]
    if obs.get("flag"):
        resource["interpretation"] = [{"coding": [{"system": INTERPRETATION_SYSTEM, "code": obs["flag"]}]}]
    if obs.get("observed_at"):
        resource["effectiveDateTime"] = _isoformat(obs["observed_at"])
    return resource


def diagnostic_report(result: LabResult) -> Dict[str, Any]:
    """Build a DiagnosticReport with its observations contained."""
    observations = [
        _observation_resource(i, obs) for i, obs in enumerate(result.observations or [], start=1)
    ]
    report = {
        "resourceType": "DiagnosticReport",
        "id": result.id,
        "identifier": [{"system": RESULT_IDENTIFIER_SYSTEM, "value": result.id}],
        "status": _REPORT_STATUS.get(result.status, "registered"),
        "category": [{"coding": [{"system": DIAGNOSTIC_SERVICE_SYSTEM, "code": "LAB", "display": "Laboratory"}]}],
        "code": {
            "coding": [{"code": result.test_code, "display": result.test_name}],
            "text": result.test_name or result.test_code,
        },
        "subject": {"reference": f"Patient/{result.patient_id}"},
        "basedOn": [{"reference": f"ServiceRequest/{result.order_id}"}],
        "result": [{"reference": f"#{obs['id']}"} for obs in observations],
    }
    if observations:
        report["contained"] = observations
    if result.completed_at:
        report["effectiveDateTime"] = _isoformat(result.completed_at)
        report["issued"] = _isoformat(result.completed_at)
    if result.conclusion:
        report["conclusion"] = result.conclusion
    return report


def patient_resource(patient: PatientRecord) -> Dict[str, Any]:
    identifiers = [{"system": PATIENT_IDENTIFIER_SYSTEM, "value": patient.external_id}]
    if patient.mrn:
        identifiers.append({
            "type": {"coding": [{"system": IDENTIFIER_TYPE_SYSTEM, "code": "MR"}]},
            "value": patient.mrn,
        })

    resource = {
        "resourceType": "Patient",
        "id": patient.external_id,
        "identifier": identifiers,
        "name": [{
            "use": "official",
            "family": patient.last_name,
            "given": [g for g in (patient.first_name or "").split() if g],
        }],
        "gender": patient.gender if patient.gender in _GENDERS else "unknown",
    }
    if patient.date_of_birth:
        resource["birthDate"] = patient.date_of_birth
    if patient.phone:
        resource["telecom"] = [{"system": "phone", "value": patient.phone}]
    address = patient.address or {}
    if address:
        line = [v for v in (address.get("street"), address.get("other")) if v]
        fhir_address = {
            "line": line,
            "city": address.get("city"),
            "state": address.get("state"),
            "postalCode": address.get("postal_code"),
            "country": address.get("country"),
        }
        resource["address"] = [{k: v for k, v in fhir_address.items() if v}]
    if patient.last_modified:
        resource["meta"] = {"lastUpdated": _isoformat(patient.last_modified)}
    return resource


_BUILDERS = {
    "DiagnosticReport": diagnostic_report,
    "Patient": patient_resource,
}  # type: Dict[str, Callable[[Any], Dict[str, Any]]]


def to_fhir(resource_kind: str, obj: Any) -> Dict[str, Any]:
    try:
        builder = _BUILDERS[resource_kind]
    except KeyError:
        raise ValueError(f"Cannot build FHIR resource of kind {resource_kind!r}") from None
    return builder(obj)


def operation_outcome(severity: str, code: str, text: str) -> Dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [{
            "severity": severity,
            "code": code,
            "details": {"text": text},
        }],
    }
