"""Outbound delivery client - adapter for pushing HL7 and FHIR payloads to integrations."""

import abc
import json
import logging
from typing import Any, Dict, Optional

import requests

import config
from lab_integration.adapters import hl7_codec
from lab_integration.adapters.fhir_codec import FHIR_JSON
from lab_integration.domain.exceptions import DeliveryError, MalformedMessageError
from lab_integration.domain.messages import AckMessage

logger = logging.getLogger(__name__)

REJECTING_ACK_CODES = ("AE", "AR", "CE", "CR")


class AbstractDeliveryClient(abc.ABC):
    """Abstract base class for outbound delivery implementations."""

    @abc.abstractmethod
    def send_hl7(self, endpoint: str, api_key: str, message: str) -> None:
        """
        POST an HL7v2 message as text/plain with an x-api-key header.

        Raises:
            DeliveryError: non-2xx status, network failure, timeout or a
                rejecting ACK in the reply
        """
        raise NotImplementedError

    @abc.abstractmethod
    def send_fhir(self, endpoint: str, token: str, resource: Dict[str, Any], method: str = "POST") -> None:
        """
        Send a FHIR resource as application/fhir+json with a bearer token.

        Raises:
            DeliveryError: non-2xx status, network failure or timeout
        """
        raise NotImplementedError


class HTTPDeliveryClient(AbstractDeliveryClient):
    """requests-based client; every call carries a timeout."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or config.get_delivery_timeout()

    def send_hl7(self, endpoint: str, api_key: str, message: str) -> None:
        headers = {"Content-Type": "text/plain", "x-api-key": api_key or ""}
        response = self._request("POST", endpoint, headers, message.encode("utf-8"))
        _check_ack_reply(endpoint, response.text)

    def send_fhir(self, endpoint: str, token: str, resource: Dict[str, Any], method: str = "POST") -> None:
        headers = {"Content-Type": FHIR_JSON, "Authorization": f"Bearer {token or ''}"}
        self._request(method, endpoint, headers, json.dumps(resource).encode("utf-8"))

    def _request(self, method: str, url: str, headers: Dict[str, str], body: bytes) -> requests.Response:
        logger.debug(f"{method} {url}")
        try:
            response = requests.request(method, url, data=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response

        except requests.exceptions.HTTPError as e:
            logger.error(f"HTTP error delivering to {url}: {e}")
            raise DeliveryError(f"HTTP {e.response.status_code} from {url}") from e

        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout delivering to {url}: {e}")
            raise DeliveryError(f"Timed out after {self.timeout}s: {url}") from e

        except requests.exceptions.RequestException as e:
            logger.error(f"Network error delivering to {url}: {e}")
            raise DeliveryError(f"Network error: {e}") from e


def _check_ack_reply(endpoint: str, body: str) -> None:
    """Raise when the receiver answered 2xx but with a rejecting HL7 ACK."""
    if not body or not body.lstrip("\x0b").startswith("MSH"):
        return
    try:
        reply = hl7_codec.parse_hl7(body)
    except MalformedMessageError:
        logger.warning(f"Unreadable HL7 reply from {endpoint}, treating as accepted")
        return
    if isinstance(reply, AckMessage) and reply.status.upper() in REJECTING_ACK_CODES:
        raise DeliveryError(f"{endpoint} rejected message {reply.control_id}: {reply.status} {reply.error_message}".rstrip())
