"""
Outbound delivery of completed lab results.

A result that transitions into 'completed' is sent to every active HL7 and
FHIR integration of its tenant. Sends run concurrently, each in its own
failure boundary; a failed send becomes one delivery log entry and never
affects the other integrations or the triggering event.
"""

import abc
import functools
import logging
from typing import Callable, List, NamedTuple, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

import config
from lab_integration.adapters import fhir_codec, hl7_codec
from lab_integration.adapters.delivery_client import AbstractDeliveryClient
from lab_integration.domain import model
from lab_integration.domain.events import ResultStatusChanged
from lab_integration.domain.exceptions import DeliveryError
from lab_integration.service_layer import fanout
from lab_integration.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


class RetryPolicy(abc.ABC):
    """How a single outbound send is attempted."""

    @abc.abstractmethod
    def run(self, send: Callable[[], None]) -> None:
        raise NotImplementedError


class FireAndForget(RetryPolicy):
    """One attempt; a failure is final for this trigger."""

    def run(self, send: Callable[[], None]) -> None:
        send()


class ExponentialBackoff(RetryPolicy):
    """Retry DeliveryError with exponential waits, re-raising the last failure."""

    def __init__(self, max_attempts: int, multiplier: float = 0.5, max_wait: float = 10.0):
        self.max_attempts = max_attempts
        self.multiplier = multiplier
        self.max_wait = max_wait

    def run(self, send: Callable[[], None]) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.multiplier, max=self.max_wait),
            retry=retry_if_exception_type(DeliveryError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                send()


def default_retry_policy() -> RetryPolicy:
    attempts = config.get_delivery_max_attempts()
    if attempts > 1:
        return ExponentialBackoff(attempts)
    return FireAndForget()


class Target(NamedTuple):
    """Where and how to send; plain values so worker threads never touch the session."""
    integration_id: str
    type: str
    endpoint: str
    credential: str

    @classmethod
    def for_integration(cls, integration: model.Integration, endpoint: Optional[str] = None) -> "Target":
        return cls(
            integration_id=integration.id,
            type=integration.type,
            endpoint=endpoint or integration.endpoint,
            credential=integration.outbound_api_key or "",
        )


def send_to_target(client: AbstractDeliveryClient, target: Target, payload, method: str = "POST") -> None:
    """Send a prebuilt payload with the target's outbound credential."""
    if target.type == model.HL7:
        client.send_hl7(target.endpoint, target.credential, payload)
    else:
        client.send_fhir(target.endpoint, target.credential, payload, method=method)


def build_result_payload(result: model.LabResult, integration: model.Integration):
    if integration.type == model.HL7:
        return hl7_codec.build_hl7(
            "ORU",
            result=result,
            receiving_application=integration.receiving_application,
            sending_application=config.get_sending_application(),
            sending_facility=config.get_sending_facility(),
        )
    return fhir_codec.to_fhir("DiagnosticReport", result)


def deliver_completed_result(
    event: ResultStatusChanged,
    uow: AbstractUnitOfWork,
    policy: Optional[RetryPolicy] = None,
    width: Optional[int] = None,
) -> List[fanout.Outcome]:
    """
    Fan a completed result out to the tenant's active integrations.

    Only the transition into 'completed' delivers; rewrites of an already
    completed result and other transitions are ignored.

    Returns:
        one Outcome per integration, keyed by integration id
    """
    if not model.is_completion(event.previous_status, event.status):
        logger.debug(
            f"Result {event.result_id}: {event.previous_status} -> {event.status} is not a completion, skipping"
        )
        return []

    policy = policy or default_retry_policy()
    width = width or config.get_delivery_concurrency()

    # No HTTP call runs while the session is open
    with uow:
        result = uow.results.get(event.result_id)
        if result is None:
            logger.warning(f"Completed result {event.result_id} not found, nothing to deliver")
            return []
        result_id = result.id
        client = uow.delivery_client

        integrations = uow.integrations.list_active_for_tenant(event.tenant_id, model.INTEGRATION_TYPES)
        logger.info(f"Delivering result {result_id} to {len(integrations)} integration(s)")

        outcomes = []
        tasks = []
        for integration in integrations:
            target = Target.for_integration(integration)
            try:
                payload = build_result_payload(result, integration)
            except Exception as e:  # pylint: disable=broad-except
                logger.exception(f"Could not build payload for integration {target.integration_id}")
                outcomes.append(fanout.Outcome(target.integration_id, e))
                continue
            send = functools.partial(send_to_target, client, target, payload)
            tasks.append((target.integration_id, functools.partial(policy.run, send)))

    outcomes.extend(fanout.fan_out(tasks, width))

    failures = []
    for outcome in outcomes:
        if outcome.ok:
            logger.info(f"Delivered result {result_id} to integration {outcome.key}")
            continue
        logger.error(f"Delivery of result {result_id} to integration {outcome.key} failed: {outcome.error}")
        failures.append(outcome)

    if failures:
        with uow:
            for outcome in failures:
                uow.logs.add_delivery_log(
                    model.DeliveryLogEntry(
                        integration_id=outcome.key,
                        kind=model.RESULT_TRANSMISSION,
                        result_id=result_id,
                        error=str(outcome.error),
                    )
                )
            uow.commit()

    return outcomes
