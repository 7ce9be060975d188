"""
Pydantic data models for the KeyVal client.

Wire payloads use camelCase; models expose snake_case attributes and accept
either form on input.
"""

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .keys import validate_key

MutationType = Literal["set", "delete", "sum", "max", "min", "append", "prepend"]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)


class Entry(_WireModel):
    """A key, its value, and the versionstamp of the last write (None if absent)."""

    key: Tuple[Any, ...]
    value: Any = None
    versionstamp: Optional[str] = None

    @field_validator("key", mode="before")
    @classmethod
    def _key(cls, v):
        return validate_key(v)

    @property
    def exists(self) -> bool:
        return self.versionstamp is not None


class Check(_WireModel):
    """Asserts that a key's versionstamp is unchanged (None = key must not exist)."""

    key: Tuple[Any, ...]
    versionstamp: Optional[str] = None

    @field_validator("key", mode="before")
    @classmethod
    def _key(cls, v):
        return validate_key(v)

    def to_wire(self) -> Dict[str, Any]:
        return {"key": list(self.key), "versionstamp": self.versionstamp}


class Mutation(_WireModel):
    """One buffered mutation of an atomic commit."""

    type: MutationType
    key: Tuple[Any, ...]
    value: Any = None
    expires_in: Optional[int] = None

    @field_validator("key", mode="before")
    @classmethod
    def _key(cls, v):
        return validate_key(v, allow_versionstamp=True)

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type, "key": list(self.key)}
        if self.type != "delete":
            out["value"] = self.value
        if self.expires_in is not None:
            out["expiresIn"] = self.expires_in
        return out


class CommitResult(_WireModel):
    """Successful commit: every check passed and every mutation was applied."""

    ok: Literal[True] = True
    versionstamp: str


class CommitError(_WireModel):
    """Failed commit: some check failed and nothing was applied.

    The store does not report which check failed.
    """

    ok: Literal[False] = False


CommitOutcome = Union[CommitResult, CommitError]


class TransactionResult(_WireModel):
    """Committed transaction: the function's return value plus the new versionstamp."""

    ok: Literal[True] = True
    value: Any = None
    versionstamp: str


class TransactionError(_WireModel):
    """Transaction that still conflicted after all retries."""

    ok: Literal[False] = False
    attempts: int = 0


TransactionOutcome = Union[TransactionResult, TransactionError]


class QueueMessage(_WireModel):
    """A message delivered by the queue."""

    id: str
    value: Any = None
    attempts: int = 0


class DlqMessage(_WireModel):
    """A message that exhausted its delivery attempts."""

    id: str
    original_id: str = Field(alias="originalId")
    value: Any = None
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    attempts: int = 0
    original_created_at: int = Field(alias="originalCreatedAt")
    failed_at: int = Field(alias="failedAt")


class QueueStats(_WireModel):
    pending: int = 0
    processing: int = 0
    dlq: int = 0
    total: int = 0


class DeleteResult(_WireModel):
    deleted_count: int = Field(default=0, alias="deletedCount")


class PaginateResult(_WireModel):
    entries: List[Entry] = Field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = Field(default=False, alias="hasMore")


class OperationMetrics(_WireModel):
    count: int = 0
    errors: int = 0
    avg_latency_ms: float = Field(default=0.0, alias="avgLatencyMs")


class StorageStats(_WireModel):
    entries: int = 0
    size_bytes: int = Field(default=0, alias="sizeBytes")


class Metrics(_WireModel):
    """Server-reported operation, queue and storage metrics."""

    operations: Dict[str, OperationMetrics] = Field(default_factory=dict)
    queue: QueueStats = Field(default_factory=QueueStats)
    storage: StorageStats = Field(default_factory=StorageStats)
