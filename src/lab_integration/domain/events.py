"""Domain events for the lab integration service."""

from dataclasses import dataclass
from typing import Optional

from shared.domain.commands import Event


@dataclass
class ResultStatusChanged(Event):
    """Event raised by result storage whenever a result's status is written."""
    result_id: str
    tenant_id: str
    status: str
    previous_status: Optional[str] = None
