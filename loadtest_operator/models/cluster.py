"""
Cluster Object Models

Worker shards (status endpoint + job handle), credentials and watch events
as seen by the controller. These are owned by the cluster; the controller
only observes and deletes them.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from loadtest_operator.config import settings


class PropagationPolicy(str, Enum):
    """How deletion of a job propagates to its pods."""

    BACKGROUND = "Background"


class WorkerEndpoint(BaseModel):
    """Addressable service in front of one worker shard."""

    name: str
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def host(self) -> str:
        return f"{self.name}.{self.namespace}.{settings.WORKER_DNS_SUFFIX}"

    @property
    def status_url(self) -> str:
        return (
            f"http://{self.host}:{settings.WORKER_STATUS_PORT}"
            f"{settings.WORKER_STATUS_PATH}"
        )


class WorkerJob(BaseModel):
    """Job handle of one worker shard."""

    name: str
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)


class Secret(BaseModel):
    name: str
    namespace: str = "default"
    data: dict[str, str] = Field(default_factory=dict)


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class WorkerEvent(BaseModel):
    """Lifecycle event of a worker pod."""

    type: EventType = EventType.MODIFIED
    name: str
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    phase: Optional[str] = Field(None, description="Pod phase, if known")
