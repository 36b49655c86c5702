"""Core data models shared across orchestrator, task queue and synchronizer."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns of the primary."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AgentType(str, Enum):
    SCHEMA_EVOLUTION = "schema-evolution"
    QUERY_VALIDATOR = "query-validator"
    LEARNING_AGGREGATOR = "learning-aggregator"
    AB_TESTING = "ab-testing"
    CUSTOM = "custom"


class AgentStatus(str, Enum):
    """Lifecycle states for an agent managed by the orchestrator."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    STOPPED = "stopped"


AGENT_TRANSITIONS: Dict[AgentStatus, FrozenSet[AgentStatus]] = {
    AgentStatus.INITIALIZING: frozenset({AgentStatus.RUNNING, AgentStatus.ERROR, AgentStatus.STOPPED}),
    AgentStatus.RUNNING: frozenset({AgentStatus.IDLE, AgentStatus.ERROR, AgentStatus.STOPPED}),
    AgentStatus.IDLE: frozenset({AgentStatus.RUNNING, AgentStatus.ERROR, AgentStatus.STOPPED}),
    AgentStatus.ERROR: frozenset({AgentStatus.STOPPED}),
    AgentStatus.STOPPED: frozenset(),
}


class ForkStrategy(str, Enum):
    NOW = "now"
    LAST_SNAPSHOT = "last-snapshot"
    TO_TIMESTAMP = "to-timestamp"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"
    SELECTIVE = "selective"


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class ConflictResolution(str, Enum):
    SOURCE_WINS = "source-wins"
    TARGET_WINS = "target-wins"
    MERGE = "merge"
    MANUAL = "manual"


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class AgentConfig:
    """Configuration payload used by the orchestrator when registering an agent."""

    name: str
    type: AgentType
    enabled: bool = True
    fork_strategy: ForkStrategy = ForkStrategy.NOW
    fork_timestamp: Optional[str] = None
    cpu: Optional[str] = None
    memory: Optional[str] = None
    auto_start: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "enabled": self.enabled,
            "fork_strategy": self.fork_strategy.value,
            "fork_timestamp": self.fork_timestamp,
            "cpu": self.cpu,
            "memory": self.memory,
            "auto_start": self.auto_start,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AgentConfig:
        return cls(
            name=data["name"],
            type=AgentType(data["type"]),
            enabled=bool(data.get("enabled", True)),
            fork_strategy=ForkStrategy(data.get("fork_strategy", ForkStrategy.NOW.value)),
            fork_timestamp=data.get("fork_timestamp"),
            cpu=data.get("cpu"),
            memory=data.get("memory"),
            auto_start=bool(data.get("auto_start", False)),
        )


@dataclass(slots=True)
class Fork:
    """Handle for an isolated database copy owned by the fork provider."""

    id: str
    name: str
    status: str
    created_at: str
    parent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "created_at": self.created_at,
            "parent_id": self.parent_id,
        }


@dataclass(slots=True)
class ForkOptions:
    strategy: ForkStrategy = ForkStrategy.NOW
    name: Optional[str] = None
    timestamp: Optional[str] = None
    cpu: Optional[str] = None
    memory: Optional[str] = None
    wait_for_completion: bool = True


@dataclass(slots=True)
class AgentMetrics:
    tasks_processed: int = 0
    errors: int = 0
    avg_processing_time_ms: float = 0.0
    start_time: datetime = field(default_factory=utcnow)

    def record_success(self, duration_ms: float) -> None:
        self.tasks_processed += 1
        self.avg_processing_time_ms += (duration_ms - self.avg_processing_time_ms) / self.tasks_processed

    def record_failure(self) -> None:
        self.errors += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks_processed": self.tasks_processed,
            "errors": self.errors,
            "avg_processing_time_ms": self.avg_processing_time_ms,
            "start_time": self.start_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> AgentMetrics:
        if not data:
            return cls()
        return cls(
            tasks_processed=int(data.get("tasks_processed", 0)),
            errors=int(data.get("errors", 0)),
            avg_processing_time_ms=float(data.get("avg_processing_time_ms", 0.0)),
            start_time=datetime.fromisoformat(data["start_time"]) if data.get("start_time") else utcnow(),
        )


@dataclass(slots=True)
class AgentInstance:
    """Runtime record for one registered agent."""

    agent_id: str
    config: AgentConfig
    status: AgentStatus = AgentStatus.INITIALIZING
    fork: Optional[Fork] = None
    engine: Optional["AsyncEngine"] = None
    last_activity: Optional[datetime] = None
    metrics: AgentMetrics = field(default_factory=AgentMetrics)
    last_error: Optional[str] = None


@dataclass(slots=True)
class Task:
    """One durable unit of work queued for an agent."""

    id: str
    agent_id: str
    task_type: str
    payload: Dict[str, Any]
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 5
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass(slots=True)
class AgentMessage:
    """Message persisted between agents; delivered by polling."""

    id: str
    from_agent_id: str
    to_agent_id: str
    message_type: str
    payload: Dict[str, Any]
    read: bool = False
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class MetricSample:
    id: str
    agent_id: str
    metric_name: str
    metric_value: float
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None


@dataclass(slots=True, frozen=True)
class SyncConfig:
    """What to copy between two endpoints and how."""

    source: str
    target: str
    tables: List[str]
    mode: SyncMode = SyncMode.INCREMENTAL
    direction: SyncDirection = SyncDirection.PUSH
    conflict_resolution: ConflictResolution = ConflictResolution.SOURCE_WINS
    filters: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "tables": list(self.tables),
            "mode": self.mode.value,
            "direction": self.direction.value,
            "conflict_resolution": self.conflict_resolution.value,
            "filters": dict(self.filters),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SyncConfig:
        return cls(
            source=data["source"],
            target=data["target"],
            tables=list(data.get("tables", [])),
            mode=SyncMode(data.get("mode", SyncMode.INCREMENTAL.value)),
            direction=SyncDirection(data.get("direction", SyncDirection.PUSH.value)),
            conflict_resolution=ConflictResolution(
                data.get("conflict_resolution", ConflictResolution.SOURCE_WINS.value)
            ),
            filters=dict(data.get("filters") or {}),
        )


@dataclass(slots=True)
class SyncJob:
    id: str
    config: SyncConfig
    status: SyncJobStatus = SyncJobStatus.PENDING
    progress: float = 0.0
    records_synced: int = 0
    errors: List[str] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


@dataclass(slots=True)
class TableStrategy:
    """Per-table sync parameters discovered by introspecting the source."""

    table: str
    primary_key: Optional[str] = None
    timestamp_column: Optional[str] = None
    filter: Optional[str] = None


@dataclass(slots=True)
class OrchestratorEvent:
    type: str
    timestamp: datetime = field(default_factory=utcnow)
    agent_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
