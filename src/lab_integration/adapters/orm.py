import logging
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import registry
from lab_integration.domain import model

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata

integrations = Table(
    "integrations",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("tenant_id", String(255), nullable=False, index=True),
    Column("name", String(255)),
    Column("type", String(16), nullable=False),
    Column("endpoint", String(1024)),
    Column("api_key", String(255), nullable=False, index=True),
    Column("outbound_api_key", String(1024)),
    Column("active", Boolean, nullable=False, default=True),
    Column("receiving_application", String(255)),
)

# One active integration per inbound key; retired keys may repeat
Index(
    "uq_integrations_active_api_key",
    integrations.c.api_key,
    unique=True,
    postgresql_where=integrations.c.active,
    sqlite_where=integrations.c.active,
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("tenant_id", String(255), nullable=False, index=True),
    Column("external_id", String(255)),
    Column("patient_external_id", String(255)),
    Column("ordering_provider", String(255)),
    Column("tests", JSON),
    Column("priority", String(32)),
    Column("clinical_info", Text),
    Column("source", String(16)),
    Column("status", String(32)),
    Column("received_at", DateTime(timezone=True)),
)

patients = Table(
    "patients",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("external_id", String(255), nullable=False),
    Column("mrn", String(255)),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("date_of_birth", String(32)),
    Column("gender", String(16)),
    Column("phone", String(64)),
    Column("address", JSON),
    Column("created_at", DateTime(timezone=True)),
    Column("last_modified", DateTime(timezone=True)),
    UniqueConstraint("tenant_id", "external_id", name="uq_patients_tenant_external_id"),
    Index("ix_patients_tenant_last_modified", "tenant_id", "last_modified"),
)

lab_results = Table(
    "lab_results",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("tenant_id", String(255), nullable=False, index=True),
    Column("external_id", String(255)),
    Column("order_id", String(255), index=True),
    Column("patient_id", String(255), index=True),
    Column("status", String(32)),
    Column("test_code", String(255)),
    Column("test_name", String(255)),
    Column("observations", JSON),
    Column("conclusion", Text),
    Column("completed_at", DateTime(timezone=True)),
    Column("source", String(16)),
)

delivery_logs = Table(
    "delivery_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("integration_id", String(255), nullable=False, index=True),
    Column("kind", String(32), nullable=False),
    Column("status", String(16), nullable=False),
    Column("result_id", String(255)),
    Column("patient_id", String(255)),
    Column("error", Text),
    Column("timestamp", DateTime(timezone=True)),
)

sync_logs = Table(
    "sync_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("integration_id", String(255), nullable=False, index=True),
    Column("kind", String(32), nullable=False),
    Column("total_records", Integer, nullable=False),
    Column("synced_count", Integer, nullable=False),
    Column("error_count", Integer, nullable=False),
    Column("start_date", DateTime(timezone=True)),
    Column("end_date", DateTime(timezone=True)),
    Column("performed_by", String(255)),
    Column("timestamp", DateTime(timezone=True)),
)


def start_mappers():
    logger.info("Starting mappers")
    mapper_registry.map_imperatively(model.Integration, integrations)
    mapper_registry.map_imperatively(model.Order, orders)
    mapper_registry.map_imperatively(model.PatientRecord, patients)
    mapper_registry.map_imperatively(model.LabResult, lab_results)
    mapper_registry.map_imperatively(model.DeliveryLogEntry, delivery_logs)
    mapper_registry.map_imperatively(model.SyncLogEntry, sync_logs)
