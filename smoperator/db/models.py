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

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel, UniqueConstraint

from smoperator.schema.trainingjob import TrainingJob


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TrainingJobRecord(SQLModel, table=True):
    """
    Row holding one TrainingJob object.

    spec and status are stored as camelCase JSON documents. resource_version
    is bumped on every write and guards all updates; generation is bumped only
    when the spec changes.
    """

    __tablename__ = "training_job"
    __table_args__ = (UniqueConstraint("namespace", "name", name="uq_training_job_namespace_name"),)

    uid: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    namespace: str = Field(max_length=253, index=True)
    name: str = Field(max_length=253)
    spec: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    finalizers: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    generation: int = 1
    resource_version: int = 1
    deletion_timestamp: Optional[datetime] = None
    gmt_created: datetime = Field(default_factory=utc_now)
    gmt_updated: datetime = Field(default_factory=utc_now)

    def to_domain(self) -> TrainingJob:
        return TrainingJob.from_manifest(
            {
                "metadata": {
                    "name": self.name,
                    "namespace": self.namespace,
                    "uid": self.uid,
                    "generation": self.generation,
                    "resourceVersion": str(self.resource_version),
                    "finalizers": list(self.finalizers or []),
                    "deletionTimestamp": self.deletion_timestamp,
                },
                "spec": self.spec,
                "status": self.status or None,
            }
        )

    @classmethod
    def from_domain(cls, job: TrainingJob) -> "TrainingJobRecord":
        record = cls(
            namespace=job.metadata.namespace,
            name=job.metadata.name,
            spec=dump_spec(job),
            status=dump_status(job),
            finalizers=list(job.metadata.finalizers),
            deletion_timestamp=job.metadata.deletion_timestamp,
        )
        if job.metadata.uid:
            record.uid = job.metadata.uid
        return record


def dump_spec(job: TrainingJob) -> dict:
    return job.spec.model_dump(by_alias=True, exclude_none=True, mode="json")


def dump_status(job: TrainingJob) -> dict:
    return job.status.model_dump(by_alias=True, exclude_none=True, mode="json")


class ReconcileScheduleRecord(SQLModel, table=True):
    """
    Per-object bookkeeping of reconciliation passes.

    pending_token names the one queued pass allowed to run; a queued task whose
    token no longer matches is dropped. lease_owner is set while a pass runs.
    Times are epoch seconds.
    """

    __tablename__ = "training_job_schedule"

    namespace: str = Field(max_length=253, primary_key=True)
    name: str = Field(max_length=253, primary_key=True)
    pending_token: Optional[str] = Field(default=None, max_length=36)
    pending_due_at: Optional[float] = None
    lease_owner: Optional[str] = Field(default=None, max_length=36)
    lease_expires_at: Optional[float] = None
    gmt_updated: datetime = Field(default_factory=utc_now)
