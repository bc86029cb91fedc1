"""
Views for read operations - separate from command/write path.
Rows are serialized inside the unit of work.
"""
import logging
from typing import Any, Dict, List, Optional

from lab_integration.domain import model
from lab_integration.domain.exceptions import NotFoundError
from lab_integration.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


def _delivery_log(entry: model.DeliveryLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "integration_id": entry.integration_id,
        "kind": entry.kind,
        "status": entry.status,
        "result_id": entry.result_id,
        "patient_id": entry.patient_id,
        "error": entry.error,
        "timestamp": _isoformat(entry.timestamp),
    }


def _sync_log(entry: model.SyncLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "integration_id": entry.integration_id,
        "kind": entry.kind,
        "total_records": entry.total_records,
        "synced_count": entry.synced_count,
        "error_count": entry.error_count,
        "start_date": _isoformat(entry.start_date),
        "end_date": _isoformat(entry.end_date),
        "performed_by": entry.performed_by,
        "timestamp": _isoformat(entry.timestamp),
    }


def integration_logs(integration_id: str, uow: AbstractUnitOfWork, limit: int = 100) -> Dict[str, List[Dict[str, Any]]]:
    """
    Delivery failures and sync summaries of one integration, newest first.

    Raises:
        NotFoundError: unknown integration
    """
    with uow:
        if uow.integrations.get(integration_id) is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        delivery_logs = [_delivery_log(e) for e in uow.logs.list_delivery_logs(integration_id, limit)]
        sync_logs = [_sync_log(e) for e in uow.logs.list_sync_logs(integration_id, limit)]

    logger.debug(f"Integration {integration_id}: {len(delivery_logs)} delivery, {len(sync_logs)} sync log entries")
    return {"delivery_logs": delivery_logs, "sync_logs": sync_logs}
