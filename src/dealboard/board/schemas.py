"""Pydantic schemas for the deal board.

Defines:
- ColumnDefinition / COLUMN_DEFINITIONS: the static, ordered pipeline stages
- Deal: a stored deal row
- DealPayload: the add/edit form payload, validated before it is sent
- Column / BoardState: the in-memory board owned by BoardSyncEngine
- ActionState / MutationResult: what each board operation reports back
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Columns ─────────────────────────────────────────────────────────────────


class ColumnDefinition(BaseModel):
    """A pipeline stage. Static configuration, not stored per user."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    position: int


COLUMN_DEFINITIONS: tuple[ColumnDefinition, ...] = (
    ColumnDefinition(id="lead", title="Lead", position=0),
    ColumnDefinition(id="contacted", title="Contacted", position=1),
    ColumnDefinition(id="proposal", title="Proposal Sent", position=2),
    ColumnDefinition(id="won", title="Closed Won", position=3),
)


# ── Deals ───────────────────────────────────────────────────────────────────


def _split_tags(value: Any) -> Any:
    """Accept the form's comma-separated string as well as a list."""
    if value is None:
        return []
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(",") if tag.strip()]
    return value


class Deal(BaseModel):
    """A stored deal row as returned by the remote authority."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    title: str
    company_name: str
    contact_name: str
    deal_value: float = Field(default=0.0, ge=0)
    status: str
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Any:
        return _split_tags(value)


class DealPayload(BaseModel):
    """Add/edit payload. Field names match the stored columns."""

    title: str = Field(min_length=1)
    company_name: str = Field(min_length=1)
    contact_name: str = Field(min_length=1)
    deal_value: float = Field(default=0.0, ge=0)
    status: str = Field(default=COLUMN_DEFINITIONS[0].id, min_length=1)
    description: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("title", "company_name", "contact_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Any:
        return _split_tags(value)


# ── Board ───────────────────────────────────────────────────────────────────


class Column(BaseModel):
    """A stage with its deals, most recently created first."""

    id: str
    title: str
    position: int
    deals: list[Deal] = Field(default_factory=list)

    def index_of(self, deal_id: str) -> int:
        for i, deal in enumerate(self.deals):
            if deal.id == deal_id:
                return i
        return -1


class BoardState(BaseModel):
    """All columns in position order, each owning its deals."""

    columns: list[Column] = Field(default_factory=list)

    @classmethod
    def empty(cls, definitions: tuple[ColumnDefinition, ...] = COLUMN_DEFINITIONS) -> BoardState:
        return cls(
            columns=[
                Column(id=d.id, title=d.title, position=d.position)
                for d in sorted(definitions, key=lambda d: d.position)
            ]
        )

    def column(self, column_id: str) -> Column | None:
        for col in self.columns:
            if col.id == column_id:
                return col
        return None

    def find_deal(self, deal_id: str) -> tuple[Column, Deal] | None:
        for col in self.columns:
            for deal in col.deals:
                if deal.id == deal_id:
                    return col, deal
        return None

    def deal_ids(self, column_id: str) -> list[str]:
        col = self.column(column_id)
        return [d.id for d in col.deals] if col else []

    @property
    def deal_count(self) -> int:
        return sum(len(col.deals) for col in self.columns)


# ── Operation Reporting ─────────────────────────────────────────────────────


class ActionState(str, Enum):
    """Per-action UI signal used to disable duplicate submissions."""

    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    ERROR = "error"


class MutationResult(BaseModel):
    """Structured outcome of a board operation."""

    ok: bool
    action: str
    deal_id: str | None = None
    error: str | None = None
    skipped: bool = False
