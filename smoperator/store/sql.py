# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
import time
from functools import wraps
from typing import Callable, List, Optional, Tuple

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlmodel import SQLModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from smoperator.db.models import ReconcileScheduleRecord, TrainingJobRecord, dump_spec, dump_status, utc_now
from smoperator.exceptions import ConflictError, ObjectNotFoundError, StoreUnavailableError
from smoperator.schema.trainingjob import TrainingJob
from smoperator.store.base import TrainingJobStore
from smoperator.tasks.coordinator import ClaimOutcome, ReconcileCoordinator

logger = logging.getLogger(__name__)


def _translate_errors(func):
    """Convert driver failures left after retries into StoreUnavailableError"""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Datastore operation {func.__name__} failed: {e}")
            raise StoreUnavailableError(str(e)) from e

    return wrapper


_retry_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_fixed(0.5),
    retry=retry_if_exception_type(OperationalError),
    reraise=True,
)


class SqlTrainingJobStore(TrainingJobStore):
    """
    TrainingJob datastore backed by a relational database.

    Every write is a conditional UPDATE on the row's resource_version, so two
    writers racing on the same object see exactly one success and one
    ConflictError.
    """

    def __init__(
        self, engine: Optional[Engine] = None, on_generation_change: Optional[Callable[[str, str], None]] = None
    ):
        if engine is None:
            from smoperator.config import engine as default_engine

            engine = default_engine
        self._engine = engine
        self._on_generation_change = on_generation_change

    def create_tables(self):
        SQLModel.metadata.create_all(self._engine)

    @staticmethod
    def _where_key(namespace: str, name: str):
        return and_(TrainingJobRecord.namespace == namespace, TrainingJobRecord.name == name)

    def _load(self, session: Session, namespace: str, name: str) -> TrainingJobRecord:
        record = session.execute(select(TrainingJobRecord).where(self._where_key(namespace, name))).scalar_one_or_none()
        if record is None:
            raise ObjectNotFoundError(namespace, name)
        return record

    @staticmethod
    def _expected_version(job: TrainingJob) -> int:
        try:
            return int(job.metadata.resource_version)
        except (TypeError, ValueError):
            raise ConflictError(job.metadata.namespace, job.metadata.name, job.metadata.resource_version)

    def _conditional_update(self, session: Session, job: TrainingJob, expected: int, **values) -> None:
        namespace, name = job.metadata.namespace, job.metadata.name
        stmt = (
            update(TrainingJobRecord)
            .where(self._where_key(namespace, name), TrainingJobRecord.resource_version == expected)
            .values(resource_version=TrainingJobRecord.resource_version + 1, gmt_updated=utc_now(), **values)
        )
        result = session.execute(stmt)
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError(namespace, name, str(expected))

    @_translate_errors
    @_retry_transient
    def create(self, job: TrainingJob) -> TrainingJob:
        record = TrainingJobRecord.from_domain(job)
        with Session(self._engine) as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ConflictError(job.metadata.namespace, job.metadata.name)
            session.refresh(record)
            logger.info(f"Created TrainingJob {record.namespace}/{record.name} uid={record.uid}")
            return record.to_domain()

    @_translate_errors
    @_retry_transient
    def get(self, namespace: str, name: str) -> TrainingJob:
        with Session(self._engine) as session:
            return self._load(session, namespace, name).to_domain()

    @_translate_errors
    @_retry_transient
    def update(self, job: TrainingJob) -> TrainingJob:
        namespace, name = job.metadata.namespace, job.metadata.name
        expected = self._expected_version(job)
        with Session(self._engine) as session:
            record = self._load(session, namespace, name)
            if record.resource_version != expected:
                raise ConflictError(namespace, name, str(expected))

            new_spec = dump_spec(job)
            spec_changed = new_spec != record.spec
            finalizers = list(job.metadata.finalizers)

            if record.deletion_timestamp is not None and not finalizers:
                stmt = delete(TrainingJobRecord).where(
                    self._where_key(namespace, name), TrainingJobRecord.resource_version == expected
                )
                if session.execute(stmt).rowcount == 0:
                    session.rollback()
                    raise ConflictError(namespace, name, str(expected))
                session.commit()
                logger.info(f"Finalizers cleared, removed TrainingJob {namespace}/{name}")
                removed = job.model_copy(deep=True)
                removed.metadata.resource_version = str(expected + 1)
                return removed

            generation = record.generation + 1 if spec_changed else record.generation
            self._conditional_update(
                session, job, expected, spec=new_spec, finalizers=finalizers, generation=generation
            )
            session.commit()
            stored = self._load(session, namespace, name).to_domain()

        if spec_changed and self._on_generation_change:
            self._on_generation_change(namespace, name)
        return stored

    @_translate_errors
    @_retry_transient
    def update_status(self, job: TrainingJob) -> TrainingJob:
        namespace, name = job.metadata.namespace, job.metadata.name
        expected = self._expected_version(job)
        with Session(self._engine) as session:
            self._load(session, namespace, name)
            self._conditional_update(session, job, expected, status=dump_status(job))
            session.commit()
            return self._load(session, namespace, name).to_domain()

    @_translate_errors
    @_retry_transient
    def request_deletion(self, namespace: str, name: str) -> Optional[TrainingJob]:
        """Mark an object for deletion; objects without finalizers are removed at once"""
        requested = False
        with Session(self._engine) as session:
            record = self._load(session, namespace, name)
            if not record.finalizers:
                session.delete(record)
                session.commit()
                logger.info(f"Removed TrainingJob {namespace}/{name}")
                return None
            if record.deletion_timestamp is None:
                record.deletion_timestamp = utc_now()
                record.generation += 1
                record.resource_version += 1
                record.gmt_updated = utc_now()
                session.add(record)
                session.commit()
                session.refresh(record)
                logger.info(f"Deletion requested for TrainingJob {namespace}/{name}")
                requested = True
            job = record.to_domain()

        if requested and self._on_generation_change:
            self._on_generation_change(namespace, name)
        return job

    @_translate_errors
    @_retry_transient
    def list_keys(self) -> List[Tuple[str, str]]:
        with Session(self._engine) as session:
            rows = session.execute(
                select(TrainingJobRecord.namespace, TrainingJobRecord.name).order_by(
                    TrainingJobRecord.namespace, TrainingJobRecord.name
                )
            ).all()
            return [(row[0], row[1]) for row in rows]


class SqlReconcileCoordinator(ReconcileCoordinator):
    """
    Reconcile coordinator shared by every worker through the database.

    Reservations and leases are atomic conditional UPDATEs on the object's
    schedule row; a rowcount of zero means another worker got there first.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        pending_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(pending_timeout, clock)
        if engine is None:
            from smoperator.config import engine as default_engine

            engine = default_engine
        self._engine = engine

    def create_tables(self):
        SQLModel.metadata.create_all(self._engine)

    @staticmethod
    def _where_key(namespace: str, name: str):
        return and_(ReconcileScheduleRecord.namespace == namespace, ReconcileScheduleRecord.name == name)

    def _ensure_row(self, session: Session, namespace: str, name: str) -> None:
        if session.get(ReconcileScheduleRecord, (namespace, name)) is not None:
            return
        session.add(ReconcileScheduleRecord(namespace=namespace, name=name))
        try:
            session.commit()
        except IntegrityError:
            # Created concurrently by another worker
            session.rollback()

    @staticmethod
    def _lease_free(now: float):
        return or_(ReconcileScheduleRecord.lease_owner.is_(None), ReconcileScheduleRecord.lease_expires_at < now)

    def _pending_free(self, now: float):
        return or_(
            ReconcileScheduleRecord.pending_token.is_(None),
            ReconcileScheduleRecord.pending_due_at < now - self.pending_timeout,
        )

    @_translate_errors
    @_retry_transient
    def reserve(self, namespace: str, name: str, countdown: float = 0, only_if_idle: bool = False) -> Optional[str]:
        now = self._clock()
        due = now + countdown
        token = self.new_token()
        if only_if_idle:
            condition = and_(self._pending_free(now), self._lease_free(now))
        else:
            condition = or_(self._pending_free(now), ReconcileScheduleRecord.pending_due_at > due)

        with Session(self._engine) as session:
            self._ensure_row(session, namespace, name)
            stmt = (
                update(ReconcileScheduleRecord)
                .where(self._where_key(namespace, name), condition)
                .values(pending_token=token, pending_due_at=due, gmt_updated=utc_now())
                .execution_options(synchronize_session=False)
            )
            reserved = session.execute(stmt).rowcount == 1
            session.commit()
        return token if reserved else None

    @_translate_errors
    @_retry_transient
    def claim(
        self, namespace: str, name: str, owner: str, lease_seconds: float, token: Optional[str] = None
    ) -> ClaimOutcome:
        now = self._clock()
        conditions = [self._where_key(namespace, name), self._lease_free(now)]
        values = {"lease_owner": owner, "lease_expires_at": now + lease_seconds, "gmt_updated": utc_now()}
        if token is not None:
            conditions.append(ReconcileScheduleRecord.pending_token == token)
            values.update(pending_token=None, pending_due_at=None)

        with Session(self._engine) as session:
            self._ensure_row(session, namespace, name)
            stmt = (
                update(ReconcileScheduleRecord)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            claimed = session.execute(stmt).rowcount == 1
            session.commit()
            if claimed:
                return ClaimOutcome.STARTED
            if token is not None:
                pending = session.execute(
                    select(ReconcileScheduleRecord.pending_token).where(self._where_key(namespace, name))
                ).scalar_one_or_none()
                if pending != token:
                    return ClaimOutcome.STALE
            return ClaimOutcome.BUSY

    @_translate_errors
    @_retry_transient
    def release(self, namespace: str, name: str, owner: str) -> None:
        with Session(self._engine) as session:
            session.execute(
                update(ReconcileScheduleRecord)
                .where(self._where_key(namespace, name), ReconcileScheduleRecord.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None, gmt_updated=utc_now())
                .execution_options(synchronize_session=False)
            )
            session.commit()
