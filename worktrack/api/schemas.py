"""Pydantic schemas for request/response validation."""
from datetime import date, datetime
from typing import Optional, List, Union
from pydantic import BaseModel, Field, field_validator
from worktrack.models.enums import (
    ItemType,
    ItemStatus,
    RecurrenceRule,
    LinkType
)


# Item schemas
class ItemCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=4)
    status: ItemStatus = ItemStatus.PENDING


class ItemResponse(BaseModel):
    id: int
    title: str
    description: Optional[str]
    priority: Optional[int]
    item_type: ItemType
    status: ItemStatus
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ItemComplete(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class ItemSummary(BaseModel):
    id: int
    title: str
    status: ItemStatus

    class Config:
        from_attributes = True


class ItemCompletionResponse(BaseModel):
    item: ItemResponse
    previous_status: ItemStatus
    unblocked: List[ItemSummary] = []


# Blocking / link schemas
class BlockerCreate(BaseModel):
    blocker_id: int


class LinkCreate(BaseModel):
    from_id: int
    to_id: int
    link_type: LinkType


class LinkResponse(BaseModel):
    id: int
    from_id: int
    to_id: int
    link_type: LinkType
    created_at: datetime

    class Config:
        from_attributes = True


class LinkedItem(BaseModel):
    """A link seen from one of its ends, with the item on the other end."""
    link_id: int
    link_type: LinkType
    item: ItemSummary


class BlockersResponse(BaseModel):
    item_id: int
    blockers: List[LinkedItem]
    count: int


class BlockingResponse(BaseModel):
    item_id: int
    blocking: List[LinkedItem]
    count: int


class LinksResponse(BaseModel):
    item_id: int
    outgoing: List[LinkedItem]
    incoming: List[LinkedItem]


class DeletedResponse(BaseModel):
    deleted: bool


# Routine schemas
class RoutineCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=4)
    recurrence_rule: RecurrenceRule
    recurrence_time: Optional[str] = None
    recurrence_days: Optional[List[Union[int, str]]] = None
    recurrence_months: Optional[List[int]] = None


class RoutineUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=4)
    recurrence_rule: Optional[RecurrenceRule] = None
    recurrence_time: Optional[str] = None
    recurrence_days: Optional[List[Union[int, str]]] = None
    recurrence_months: Optional[List[int]] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> str:
        # Omitting title leaves it unchanged; an explicit null would clear a required column
        if v is None:
            raise ValueError("title cannot be null")
        return v


class RoutineResponse(BaseModel):
    id: int
    title: str
    description: Optional[str]
    priority: Optional[int]
    recurrence_rule: Optional[str]
    recurrence_time: Optional[str]
    recurrence_days: Optional[str]
    recurrence_months: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RoutineStatusResponse(BaseModel):
    routine: RoutineResponse
    last_completed: Optional[str]
    completion_count: int
    is_due_today: Optional[bool] = None
    completed_today: Optional[bool] = None

    class Config:
        from_attributes = True


class RoutinesDueResponse(BaseModel):
    for_date: date
    total: int
    pending: List[RoutineStatusResponse]
    completed: List[RoutineStatusResponse]


class OverdueRoutineResponse(BaseModel):
    routine: RoutineResponse
    overdue_dates: List[str]
    days_overdue: int

    class Config:
        from_attributes = True


class OverdueResponse(BaseModel):
    total_overdue: int
    total_missed_instances: int
    routines: List[OverdueRoutineResponse]


class CompletionHistoryEntry(BaseModel):
    id: int
    completed_date: date
    notes: Optional[str]
    completed_at: datetime

    class Config:
        from_attributes = True


class RoutineDetailResponse(RoutineResponse):
    history: List[CompletionHistoryEntry] = []


class RoutineDateAction(BaseModel):
    """Body for complete/skip/uncomplete/unskip; date defaults to today."""
    for_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=500)


class CatchUpRequest(BaseModel):
    as_of: Optional[date] = None


class CompletionResponse(BaseModel):
    routine_id: int
    for_date: date
    completion_id: Optional[int]
    already_completed: bool
    superseded_skip: bool = False


class SkipResponse(BaseModel):
    routine_id: int
    for_date: date
    skip_id: Optional[int]
    already_skipped: bool
    already_completed: bool = False


class RemovalResponse(BaseModel):
    routine_id: int
    for_date: date
    deleted: bool


class CompleteCatchUpResponse(BaseModel):
    routine_id: int
    completed_count: int
    completed_dates: List[str]
    next_due: str


class SkipCatchUpResponse(BaseModel):
    routine_id: int
    skipped_count: int
    skipped_dates: List[str]
    next_due: str


# Error response
class ErrorResponse(BaseModel):
    """Body returned for every rejected request."""
    error: str
