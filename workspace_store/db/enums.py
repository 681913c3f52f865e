from enum import Enum


class WorkspaceLifecycleEnum(str, Enum):
    draft = "draft"
    active = "active"
    paused = "paused"
    archived = "archived"
    deleted = "deleted"


class WorkspaceRunStatusEnum(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class ConnectorStatusEnum(str, Enum):
    unconnected = "unconnected"
    connected = "connected"
    degraded = "degraded"
    revoked = "revoked"


class DecisionCardStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    expired = "expired"


class IsolationLevelEnum(str, Enum):
    read_uncommitted = "READ UNCOMMITTED"
    read_committed = "READ COMMITTED"
    repeatable_read = "REPEATABLE READ"
    serializable = "SERIALIZABLE"


ARCHIVED_LIFECYCLES = (WorkspaceLifecycleEnum.archived.value, WorkspaceLifecycleEnum.deleted.value)
