"""Domain entities of the integration engine."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

HL7 = "HL7"
FHIR = "FHIR"
INTEGRATION_TYPES = (HL7, FHIR)

RESULT_TRANSMISSION = "result_transmission"
PATIENT_SYNC = "patient_sync"

COMPLETED = "completed"
PENDING = "pending"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Integration:
    """A tenant-configured external EMR/LIS endpoint."""
    id: str
    tenant_id: str
    name: str
    type: str
    endpoint: str
    api_key: str
    outbound_api_key: str = ""
    active: bool = True
    receiving_application: str = ""


@dataclass(eq=False)
class Order:
    id: str
    tenant_id: str
    external_id: str
    patient_external_id: str
    ordering_provider: str = ""
    tests: List[Dict[str, Any]] = field(default_factory=list)
    priority: str = "routine"
    clinical_info: str = ""
    source: str = HL7
    status: str = PENDING
    received_at: Optional[datetime] = None


@dataclass(eq=False)
class PatientRecord:
    """Patient keyed by (tenant_id, external_id)."""
    id: str
    tenant_id: str
    external_id: str
    mrn: str = ""
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""   # 'YYYY-MM-DD'
    gender: str = "unknown"   # 'male' | 'female' | 'other' | 'unknown'
    phone: str = ""
    address: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    last_modified: Optional[datetime] = None

    def update(self, fields: Dict[str, Any], modified_at: datetime) -> None:
        """Apply demographic fields in place, keeping identity and created_at."""
        for name, value in fields.items():
            if name in ("id", "tenant_id", "external_id", "created_at"):
                continue
            setattr(self, name, value)
        self.last_modified = modified_at


@dataclass(eq=False)
class LabResult:
    id: str
    tenant_id: str
    order_id: str
    patient_id: str
    status: str = PENDING
    external_id: str = ""
    test_code: str = ""
    test_name: str = ""
    observations: List[Dict[str, Any]] = field(default_factory=list)
    conclusion: str = ""
    completed_at: Optional[datetime] = None
    source: str = "LAB"


@dataclass(eq=False)
class DeliveryLogEntry:
    integration_id: str
    kind: str
    error: str
    status: str = "failed"
    result_id: Optional[str] = None
    patient_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass(eq=False)
class SyncLogEntry:
    integration_id: str
    total_records: int
    synced_count: int
    error_count: int
    start_date: datetime
    end_date: datetime
    performed_by: str
    kind: str = PATIENT_SYNC
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class QueryResult:
    """Answer to an inbound QRY; results is empty when nothing matched."""
    query_id: str
    query_type: str
    results: List[LabResult] = field(default_factory=list)


def is_completion(previous_status: Optional[str], status: Optional[str]) -> bool:
    """True only for the transition into 'completed', not for rewrites of it."""
    return previous_status != COMPLETED and status == COMPLETED


def detached(entity):
    """Plain copy of an entity, safe to read after its unit of work has closed."""
    return replace(entity)
