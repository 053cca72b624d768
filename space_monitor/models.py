"""
Data models for the space monitoring pipeline.

Task records travel through the queues as plain JSON dicts. Producers build
them from the models below and dump them with camelCase aliases; consumers
validate dicts back into the models before acting on them.
"""

import time
from enum import Enum
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class Priority(str, Enum):
    """Processing priority, encoded in queue names."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Strict polling order for every processor
PRIORITY_ORDER = [Priority.HIGH, Priority.MEDIUM, Priority.LOW]


class Scope(str, Enum):
    """Owning tenant type of a cache or search key."""
    PERSONAL = "personal"   # identity is a username
    GIT = "git"             # identity is a named space


class FileAction(str, Enum):
    """File system change reported by the watcher."""
    ADD = "add"
    CHANGE = "change"
    UNLINK = "unlink"
    ADD_DIR = "addDir"
    UNLINK_DIR = "unlinkDir"


class CacheAction(str, Enum):
    INVALIDATE = "invalidate"
    REMOVE = "remove"
    REFRESH_TREE = "refresh-tree"
    UPDATE = "update"


class ContentAction(str, Enum):
    REINDEX = "reindex"
    BATCH_REINDEX = "batch-reindex"


class SearchAction(str, Enum):
    INDEX = "index"
    REMOVE = "remove"
    BULK_INDEX = "bulk-index"


class EngineStatus(str, Enum):
    """Execution engine state."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TaskValidationError(ValueError):
    """A queued record could not be parsed into its task model."""


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class TaskRecord(BaseModel):
    """
    Fields shared by every queued record.

    A record belongs either to a personal space (``username``) or to a named
    space (``spaceName``); ``identity`` resolves whichever the scope needs.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, extra="ignore")

    path: str = Field(..., description="Path relative to the owning root (posix separators)")
    scope: Scope = Field(default=Scope.PERSONAL, description="Owning tenant type")
    username: Optional[str] = Field(default=None, description="Owner of a personal space")
    space_name: Optional[str] = Field(default=None, alias="spaceName", description="Owning named space")
    timestamp: int = Field(default_factory=now_ms, description="When the change was observed (ms)")
    attempts: int = Field(default=0, description="Failed processing attempts so far")

    @model_validator(mode="after")
    def _check_identity(self):
        if self.scope == Scope.PERSONAL and not self.username:
            raise ValueError("personal records require a username")
        if self.scope == Scope.GIT and not self.space_name:
            raise ValueError("space records require a spaceName")
        return self

    @property
    def identity(self) -> str:
        """Username or space name, depending on scope."""
        return self.username if self.scope == Scope.PERSONAL else self.space_name

    def owner_fields(self) -> Dict[str, Any]:
        """Scope and identity fields in wire form, for derived records."""
        fields = {"scope": self.scope}
        if self.scope == Scope.PERSONAL:
            fields["username"] = self.username
        else:
            fields["spaceName"] = self.space_name
        return fields

    def to_record(self) -> Dict[str, Any]:
        """Dump to the JSON dict that goes on a queue."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_record(cls, record: Any):
        """
        Validate a dequeued record.

        Raises:
            TaskValidationError: If the record is malformed
        """
        if not isinstance(record, dict):
            raise TaskValidationError(f"Task record must be an object, got {type(record).__name__}")
        try:
            return cls.model_validate(record)
        except ValidationError as e:
            raise TaskValidationError(str(e)) from e


class FileEvent(TaskRecord):
    """Raw classified file system event (the ``file-events`` channel)."""

    action: FileAction
    priority: Priority = Priority.MEDIUM
    full_path: str = Field(..., alias="fullPath", description="Absolute path on disk")
    is_directory: bool = Field(default=False, alias="isDirectory")
    space_access: Optional[str] = Field(default=None, alias="spaceAccess")
    size: Optional[int] = None
    mtime: Optional[float] = None


class CacheTask(TaskRecord):
    """Cache operation for the Cache Processor."""

    action: CacheAction
    content: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None


class ContentTask(TaskRecord):
    """Content extraction request for the Content Processor."""

    action: ContentAction
    full_path: Optional[str] = Field(default=None, alias="fullPath")
    files: List[str] = Field(default_factory=list)
    batch_id: Optional[str] = Field(default=None, alias="batchId")

    @model_validator(mode="after")
    def _check_full_path(self):
        if not self.full_path:
            raise ValueError(f"{self.action} requires fullPath")
        return self


class SearchTask(TaskRecord):
    """Search index operation for the Search Processor."""

    action: SearchAction
    searchable_text: str = Field(default="", alias="searchableText")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    items: List[Dict[str, Any]] = Field(default_factory=list)


class SpaceConfig(BaseModel):
    """
    A named collaborative space whose local folder is watched.

    Changes under a space are attributed to the ``git`` scope.
    """

    name: str = Field(..., description="Unique space name")
    path: str = Field(..., description="Local folder of the space")
    access: str = Field(default="readwrite", description="Access mode carried on events")

    # Metadata
    added_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate and resolve path."""
        path = Path(v).resolve()
        if not path.exists():
            raise ValueError(f"Space folder does not exist: {path}")
        if not path.is_dir():
            raise ValueError(f"Path is not a directory: {path}")
        return str(path)


class MonitorSettings(BaseModel):
    """Global pipeline settings."""

    # Watcher
    stability_ms: int = Field(default=2000, description="Quiet period before a write is published")
    initial_scan: bool = Field(default=False, description="Publish the existing tree on start")
    ignore_patterns: List[str] = Field(
        default_factory=lambda: [
            ".git/", "node_modules/", ".DS_Store", "Thumbs.db", "*.tmp", "*.swp", "*.lock"
        ],
        description="Path fragments and globs the watcher ignores"
    )

    # Processors
    poll_interval: float = Field(default=1.0, description="Sleep when all priority queues are empty (s)")
    error_backoff: float = Field(default=5.0, description="Sleep after a failed item or dequeue (s)")
    max_attempts: int = Field(default=3, description="Processing attempts before dead-lettering")

    # Orchestration
    restart_delay: float = Field(default=5.0, description="Delay before restarting a critical task (s)")
    critical_tasks: List[str] = Field(default_factory=lambda: ["space-watcher"])
    health_retries: int = Field(default=15, description="Readiness probes before startup fails")
    health_delay: float = Field(default=2.0, description="Delay between readiness probes (s)")
    stats_capacity: int = Field(default=100, description="Statistics records retained per component")

    # Cache backend
    cache_backend: str = Field(default="memory", description="memory or redis")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # HTTP surface
    api_enabled: bool = Field(default=True)
    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=3001)

    @field_validator('cache_backend')
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError(f"Unknown cache backend: {v}")
        return v


class MonitorConfig(BaseModel):
    """
    Complete monitor configuration.

    One personal content root plus any number of named spaces.
    """

    version: str = "1.0"
    settings: MonitorSettings = Field(default_factory=MonitorSettings)

    personal_root: Optional[str] = Field(
        default=None,
        description="Root holding one folder per user"
    )
    spaces: List[SpaceConfig] = Field(default_factory=list)

    # Metadata
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    def set_personal_root(self, path: str) -> None:
        """Set the personal content root."""
        path_obj = Path(path).resolve()
        if not path_obj.exists():
            raise ValueError(f"Personal root does not exist: {path_obj}")
        if not path_obj.is_dir():
            raise ValueError(f"Personal root is not a directory: {path_obj}")
        self.personal_root = str(path_obj)
        self.updated_at = datetime.now().isoformat()

    def get_space(self, name: str) -> Optional[SpaceConfig]:
        """Get a space by name."""
        for space in self.spaces:
            if space.name == name:
                return space
        return None

    def add_space(self, name: str, path: str, access: str = "readwrite") -> SpaceConfig:
        """Add a named space."""
        if self.get_space(name):
            raise ValueError(f"Space already exists: {name}")

        space = SpaceConfig(name=name, path=path, access=access)
        self.spaces.append(space)
        self.updated_at = datetime.now().isoformat()
        return space

    def remove_space(self, name: str) -> bool:
        """Remove a named space."""
        for i, space in enumerate(self.spaces):
            if space.name == name:
                self.spaces.pop(i)
                self.updated_at = datetime.now().isoformat()
                return True
        return False
