"""
Typed inbound messages.

The codecs decode a raw body exactly once into one of the kinds below;
routing and handlers only ever see these shapes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

DEFAULT_FIELD_SEPARATOR = "|"
DEFAULT_ENCODING_CHARACTERS = "^~\\&"


@dataclass(frozen=True)
class MessageHeader:
    message_type: str
    control_id: str
    trigger_event: str = ""
    sending_application: str = ""
    sending_facility: str = ""
    receiving_application: str = ""
    receiving_facility: str = ""
    timestamp: str = ""
    processing_id: str = "P"
    version: str = "2.5.1"
    field_separator: str = DEFAULT_FIELD_SEPARATOR
    encoding_characters: str = DEFAULT_ENCODING_CHARACTERS


@dataclass
class PatientData:
    external_id: str
    mrn: str = ""
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    gender: str = "unknown"
    phone: str = ""
    address: Dict[str, str] = field(default_factory=dict)

    def fields(self) -> Dict[str, Any]:
        return {
            "mrn": self.mrn,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "date_of_birth": self.date_of_birth,
            "gender": self.gender,
            "phone": self.phone,
            "address": dict(self.address),
        }


@dataclass
class OrderedTest:
    code: str
    name: str = ""
    coding_system: str = ""


@dataclass
class OrderData:
    external_id: str
    patient: PatientData
    ordering_provider: str = ""
    tests: List[OrderedTest] = field(default_factory=list)
    priority: str = "routine"
    clinical_info: str = ""


@dataclass
class ObservationData:
    code: str
    display: str = ""
    value: Any = ""
    unit: str = ""
    reference_range: str = ""
    flag: str = ""
    status: str = ""
    observed_at: str = ""


@dataclass
class QueryData:
    query_id: str
    query_type: str
    order_id: str = ""
    patient_id: str = ""
    date_range: Optional[Tuple[str, str]] = None


@dataclass
class ReportData:
    external_id: str
    status: str
    order_id: str = ""
    patient_id: str = ""
    code: str = ""
    display: str = ""
    observations: List[ObservationData] = field(default_factory=list)
    conclusion: str = ""
    issued: str = ""


# ---------- HL7v2 kinds ----------

@dataclass
class OrderMessage:
    header: MessageHeader
    order: OrderData


@dataclass
class AdtMessage:
    header: MessageHeader
    patient: PatientData
    event_type: str = ""


@dataclass
class QueryMessage:
    header: MessageHeader
    query: QueryData


@dataclass
class AckMessage:
    header: MessageHeader
    status: str
    control_id: str
    error_message: str = ""


@dataclass
class UnsupportedHL7Message:
    header: MessageHeader


# ---------- FHIR kinds ----------

@dataclass
class ServiceRequestResource:
    resource_id: str
    order: OrderData


@dataclass
class PatientResource:
    resource_id: str
    patient: PatientData


@dataclass
class DiagnosticReportResource:
    resource_id: str
    report: ReportData


@dataclass
class UnsupportedResource:
    resource_type: str


HL7Message = Union[OrderMessage, AdtMessage, QueryMessage, AckMessage, UnsupportedHL7Message]
FHIRMessage = Union[ServiceRequestResource, PatientResource, DiagnosticReportResource, UnsupportedResource]
ParsedMessage = Union[HL7Message, FHIRMessage]
