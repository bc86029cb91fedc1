"""Read-side answers to inbound HL7 queries."""

import logging
from datetime import date, datetime, time, timezone
from typing import List, Optional, Tuple

from lab_integration.adapters.repository import AbstractResultRepository
from lab_integration.domain.exceptions import ProcessingError
from lab_integration.domain.model import LabResult

logger = logging.getLogger(__name__)

RESULT_STATUS = "RESULT_STATUS"
PATIENT_RESULTS = "PATIENT_RESULTS"
QUERY_TYPES = (RESULT_STATUS, PATIENT_RESULTS)


def _day_bound(value: str, end: bool) -> Optional[datetime]:
    if not value:
        return None
    try:
        day = date.fromisoformat(value[:10])
    except ValueError as e:
        raise ProcessingError(f"Invalid query date {value!r}") from e
    return datetime.combine(day, time.max if end else time.min, tzinfo=timezone.utc)


class ResultQueryService:
    def __init__(self, results: AbstractResultRepository):
        self.results = results

    def result_status(self, order_id: str, tenant_id: str) -> List[LabResult]:
        """Latest result of an order, as a one-element list, or [] if none."""
        result = self.results.latest_for_order(tenant_id, order_id)
        logger.debug(f"Result status for order {order_id}: {result.status if result else 'none'}")
        return [result] if result else []

    def patient_results(
        self,
        patient_id: str,
        date_range: Optional[Tuple[str, str]],
        tenant_id: str,
    ) -> List[LabResult]:
        """All results of a patient, optionally limited to an inclusive 'YYYY-MM-DD' range."""
        start, end = date_range or ("", "")
        return self.results.list_for_patient(
            tenant_id,
            patient_id,
            start=_day_bound(start, end=False),
            end=_day_bound(end, end=True),
        )
