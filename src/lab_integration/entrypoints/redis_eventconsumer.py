"""Redis event consumer for the integration engine - listens to result status changes."""

import json
import logging
import os

import redis
from sqlalchemy import create_engine

import config
from lab_integration.adapters import orm
from lab_integration.domain import events
from lab_integration.service_layer import messagebus
from lab_integration.service_layer.unit_of_work import SqlAlchemyUnitOfWork

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for Redis event consumer."""
    logger.info("Integration Redis pubsub consumer starting")

    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    orm.start_mappers()
    logger.info("Database tables created and ORM mappers initialized")

    r = redis.Redis(**config.get_redis_host_and_port())
    pubsub = r.pubsub(ignore_subscribe_messages=True)
    channel = config.get_result_events_channel()
    pubsub.subscribe(channel)

    logger.info(f"Subscribed to '{channel}' channel, waiting for messages...")

    for m in pubsub.listen():
        handle_result_status_changed(m)


def handle_result_status_changed(m):
    """
    Handle a result status change published by the result store.

    Payload: {"result_id", "tenant_id", "previous_status", "status"}.
    Whether the change is a completion is decided by the delivery handler.

    Args:
        m: Redis message dictionary
    """
    logger.debug("Received message: %s", m)

    try:
        data = json.loads(m["data"])
        result_id = data.get("result_id")
        tenant_id = data.get("tenant_id")

        if not result_id or not tenant_id:
            logger.error("Result status message without result_id or tenant_id: %s", data)
            return

        event = events.ResultStatusChanged(
            result_id=result_id,
            tenant_id=tenant_id,
            status=data.get("status"),
            previous_status=data.get("previous_status"),
        )

        uow = SqlAlchemyUnitOfWork()
        messagebus.handle(event, uow)

        logger.info(f"Processed status change of result {result_id} to {event.status}")

    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON from message: {e}")
    except Exception as e:
        logger.error(f"Error handling result status change: {e}", exc_info=True)


if __name__ == "__main__":
    main()
