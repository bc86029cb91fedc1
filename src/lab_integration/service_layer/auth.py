import logging
from typing import Optional

from lab_integration.domain.exceptions import AuthenticationError
from lab_integration.domain.model import Integration, detached
from lab_integration.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def authenticate(api_key: Optional[str], uow: AbstractUnitOfWork) -> Integration:
    """
    Resolve an inbound API key to its active integration.

    Missing, empty, unknown and inactive keys fail the same way.
    """
    if not api_key:
        logger.warning("Rejected inbound request without API key")
        raise AuthenticationError("Unauthorized")

    with uow:
        integration = uow.integrations.get_active_by_api_key(api_key)
        if integration is not None:
            integration = detached(integration)

    if integration is None:
        logger.warning("Rejected inbound request with unknown or inactive API key")
        raise AuthenticationError("Unauthorized")
    return integration
