"""Domain models for the notesync database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum


class OperationType(str, Enum):
    """Embedding operation recorded in the retry queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RetryStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"


class EntityType(str, Enum):
    """Searchable entity groups."""

    WORK_NOTE = "work_note"
    PERSON = "person"
    DEPARTMENT = "department"


@dataclass
class WorkNote:
    work_id: str
    title: str
    content_raw: str = ""
    category: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    embedded_at: str | None = None


@dataclass
class Person:
    person_id: str
    name: str
    current_dept: str | None = None
    current_position: str | None = None
    phone_ext: str | None = None
    employment_status: str = "active"
    updated_at: str | None = None


@dataclass
class Department:
    dept_name: str
    description: str = ""
    is_active: bool = True
    updated_at: str | None = None


@dataclass(frozen=True)
class RecordSnapshot:
    """Point-in-time read of a work note plus the details chunk metadata needs.

    ``updated_at`` is the optimistic-concurrency token checked by the guarded
    ``embedded_at`` update.
    """

    work_id: str
    title: str
    content_raw: str
    category: str | None
    created_at: str
    updated_at: str
    embedded_at: str | None = None
    person_ids: tuple[str, ...] = ()
    dept_name: str | None = None

    @property
    def created_at_bucket(self) -> str:
        """Day bucket (YYYY-MM-DD) used as vector metadata."""
        return self.created_at[:10]


@dataclass
class EmbeddingChunk:
    id: str
    text: str
    metadata: dict = field(default_factory=dict)

    @property
    def work_id(self) -> str:
        return self.metadata["work_id"]

    @property
    def chunk_index(self) -> int:
        return int(self.metadata["chunk_index"])


@dataclass(frozen=True)
class SearchFilters:
    """Query-time filters shared by the lexical and semantic paths.

    Attributes:
        person_id: Only work notes linked to this person.
        dept_name: Only work notes linked to a person currently in this department.
        category: Only work notes with this category.
        date_from: Inclusive lower bound on ``created_at`` (ISO date or datetime).
        date_to: Inclusive upper bound on ``created_at`` (ISO date or datetime).
        limit: Maximum results per entity group.
    """

    person_id: str | None = None
    dept_name: str | None = None
    category: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    limit: int = 10


@dataclass
class RetryQueueItem:
    id: str
    work_id: str
    operation_type: OperationType
    attempt_count: int
    max_attempts: int
    next_retry_at: str | None
    status: RetryStatus
    error_message: str | None = None
    error_details: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    dead_letter_at: str | None = None
    work_title: str | None = None  # joined from work_notes for admin listings

    @property
    def error_details_dict(self) -> dict:
        return json.loads(self.error_details) if self.error_details else {}

    @property
    def is_active(self) -> bool:
        return self.status in (RetryStatus.PENDING, RetryStatus.RETRYING)
