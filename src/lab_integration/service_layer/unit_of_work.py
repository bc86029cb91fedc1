# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
from typing import List

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session

import config
from lab_integration.adapters import delivery_client, repository
from shared.domain.commands import Event


class AbstractUnitOfWork(abc.ABC):
    integrations: repository.AbstractIntegrationRepository
    orders: repository.AbstractOrderRepository
    patients: repository.AbstractPatientRepository
    results: repository.AbstractResultRepository
    logs: repository.AbstractLogRepository
    delivery_client: delivery_client.AbstractDeliveryClient

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()

    def collect_new_events(self) -> List[Event]:
        # Result status events arrive from the result store over redis.
        return []

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


_default_session_factory = None


def default_session_factory():
    global _default_session_factory
    if _default_session_factory is None:
        _default_session_factory = sessionmaker(
            bind=create_engine(
                config.get_postgres_uri(),
                isolation_level="REPEATABLE READ",
            )
        )
    return _default_session_factory


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory=None, delivery_client_impl=None):
        self.session_factory = session_factory or default_session_factory()
        self.delivery_client_impl = delivery_client_impl or delivery_client.HTTPDeliveryClient()

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.integrations = repository.SqlAlchemyIntegrationRepository(self.session)
        self.orders = repository.SqlAlchemyOrderRepository(self.session)
        self.patients = repository.SqlAlchemyPatientRepository(self.session)
        self.results = repository.SqlAlchemyResultRepository(self.session)
        self.logs = repository.SqlAlchemyLogRepository(self.session)
        self.delivery_client = self.delivery_client_impl
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
