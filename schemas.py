"""Pydantic request and response models for the HTTP layer."""

from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field

__all__ = [
    "ReadingEntryIn",
    "HomeworkEntryIn",
    "GoalIn",
    "HomeworkAnalyzeIn",
    "DailyStat",
    "LeaderboardRow",
    "DeleteResult",
    "ColumnOutcomeOut",
    "SchemaStatusOut",
]


# Numeric fields stay ``Any``: non-integers are treated as zero downstream
# instead of being rejected.
class ReadingEntryIn(BaseModel):
    date: Optional[str] = None
    pages: Any = None
    minutes: Any = None
    book_title: Optional[str] = None
    book_author: Optional[str] = None
    notes: Optional[str] = None
    photo_key: Optional[str] = None


class HomeworkEntryIn(BaseModel):
    child_id: Optional[str] = None
    date: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    photo_key: Optional[str] = None


class GoalIn(BaseModel):
    unit: Optional[str] = None
    target_value: Any = None
    starts_on: Optional[str] = None
    ends_on: Optional[str] = None


class HomeworkAnalyzeIn(BaseModel):
    notes: Optional[str] = None
    photo_key: Optional[str] = None
    child_name: Optional[str] = None


class DailyStat(BaseModel):
    date: str
    pages: int
    minutes: int
    unit: Optional[str] = None
    goal: Optional[int] = Field(default=None, description="Target of the goal in force that day.")
    met: bool = False


class LeaderboardRow(BaseModel):
    child_id: str
    name: str
    total_pages: int


class DeleteResult(BaseModel):
    ok: bool = True
    already_deleted: bool = False


class ColumnOutcomeOut(BaseModel):
    name: str
    status: Literal["present", "added", "failed"]
    error: Optional[str] = None


class SchemaStatusOut(BaseModel):
    table: str
    conformant: bool
    rebuilt: bool = False
    created: bool = False
    still_missing: List[str] = Field(default_factory=list)
    columns: List[ColumnOutcomeOut] = Field(default_factory=list)
