"""Schemas for operations, their progress, and the persisted snapshot.

Everything that crosses the wire (WebSocket channels) or lands in the
snapshot uses camelCase aliases, so the front-end and older snapshots see
the same field names. Python code uses the snake_case attributes.
"""

import math
import time
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def unix_time_now() -> int:
    return int(time.time())


class WireModel(BaseModel):
    """Base for models serialized with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OperationState(str, Enum):
    """Operation lifecycle states. Only ever moves forward, except recovery."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"


class OpCode(IntEnum):
    RELATED = 0
    QUERY = 1


class PhaseType(IntEnum):
    """Phases reported by the analyzer through on_output()."""
    RESOLVE_INPUT = 1
    RESOLVE_COMPARISONS = 2
    SKIM_COMPARISONS = 3
    AUGMENT_DATA = 4
    TOPICS_STATS = 5
    STATS = 6


MAX_RESULTS_LIMIT = 100000
MAX_STARS_PER_USER = 400


def _parse_int(value: Any) -> int:
    # Form clients send numbers as strings
    if isinstance(value, bool):
        raise ValueError("expected an integer, got a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("expected a finite number")
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise ValueError(f"expected an integer, got {type(value).__name__}")


class RequestAdmin(WireModel):
    invalidate_subject: Optional[bool] = None


class AnalysisRequest(WireModel):
    """Validated, normalized submission parameters."""

    op_code: OpCode = Field(description="0: related, 1: query")
    op_query: str = Field(min_length=1, description="e.g. 'github/roadmap', or 'nlp'")
    max_results: int = 250
    limit_stars_per_user: int = 200
    increase_snr: bool = Field(
        default=False,
        alias="increaseSNR",
        description="Filter out doc-only and non-org projects",
    )
    stars_history: bool = Field(
        default=False,
        description="Slowly fetch all stars for the repos",
    )
    admin: Optional[RequestAdmin] = None

    @field_validator("op_code", mode="before")
    @classmethod
    def _strict_op_code(cls, value: Any) -> Any:
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError("opCode must be a number")
        return value

    @field_validator("op_query", mode="before")
    @classmethod
    def _string_query(cls, value: Any) -> Any:
        if not isinstance(value, str):
            raise ValueError("opQuery must be a string")
        return value

    @field_validator("max_results", mode="before")
    @classmethod
    def _clamp_max_results(cls, value: Any) -> int:
        return max(1, min(_parse_int(value), MAX_RESULTS_LIMIT))

    @field_validator("limit_stars_per_user", mode="before")
    @classmethod
    def _clamp_stars_per_user(cls, value: Any) -> int:
        return min(_parse_int(value), MAX_STARS_PER_USER)


class Progress(WireModel):
    """Mutable execution state of one operation. Timestamps are unix seconds, 0 = unset."""

    state: OperationState = OperationState.QUEUED
    queued_at: int = 0
    started_at: int = 0
    ended_at: int = 0
    phase_index: int = 0
    phase_count: int = 0
    fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    error: Optional[str] = Field(
        default=None,
        description="Set while done if the run failed or a phase produced unusable data",
    )


# Fields the analyzer may patch through on_progress(); state and timestamps
# belong to the scheduler.
PATCHABLE_PROGRESS_FIELDS = ("phase_index", "phase_count", "fraction", "error")


class FunnelEntry(WireModel):
    size: int
    stage: str
    source: str = ""


class OutputRef(WireModel):
    """Reference to a stored artifact."""

    format: str
    row_count: int
    col_count: int
    byte_size: int
    cache_key: str


class Operation(WireModel):
    """One user-submitted analysis and its full lifecycle state."""

    uid: str
    seq: int = Field(default=0, description="Monotonic submission sequence number")
    request: AnalysisRequest
    progress: Progress = Field(default_factory=Progress)
    funnel: list[FunnelEntry] = Field(default_factory=list)
    filters: list[str] = Field(default_factory=list)
    outputs: list[OutputRef] = Field(default_factory=list)
    submitter_id: str = ""

    @property
    def state(self) -> OperationState:
        return self.progress.state

    @property
    def is_active(self) -> bool:
        return self.progress.state != OperationState.DONE


class Snapshot(WireModel):
    """Durable projection of the whole queue."""

    format_version: int
    operations: list[Operation] = Field(default_factory=list)


class ServerStatus(WireModel):
    """Ephemeral server status, rebuilt from live state and never persisted."""

    connected_clients: int = 0
    is_running: bool = False
    queue_full: bool = False
