"""Commands for the lab integration service."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from shared.domain.commands import Command


@dataclass
class CreateOrder(Command):
    """Command to register a pending order received from an external system."""
    tenant_id: str
    external_id: str
    patient_external_id: str
    source: str
    ordering_provider: str = ""
    tests: List[Dict[str, Any]] = field(default_factory=list)
    priority: str = "routine"
    clinical_info: str = ""


@dataclass
class UpsertPatient(Command):
    """Command to create or update a patient by (tenant_id, external_id)."""
    tenant_id: str
    external_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AnswerQuery(Command):
    tenant_id: str
    query_id: str
    query_type: str
    order_id: str = ""
    patient_id: str = ""
    date_range: Optional[Tuple[str, str]] = None


@dataclass
class IngestDiagnosticReport(Command):
    """Command to store a lab result reported as a FHIR DiagnosticReport."""
    tenant_id: str
    external_id: str
    status: str
    order_id: str = ""
    patient_id: str = ""
    test_code: str = ""
    test_name: str = ""
    observations: List[Dict[str, Any]] = field(default_factory=list)
    conclusion: str = ""
    completed_at: Optional[datetime] = None


@dataclass
class SyncPatientData(Command):
    """Command to re-send a tenant's patients to one integration."""
    integration_id: str
    start_date: datetime
    end_date: datetime
    performed_by: str
    role: str
