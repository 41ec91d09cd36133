"""API routes for items, the blocking graph and routines."""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from worktrack.config import Settings, get_settings
from worktrack.database import get_db
from worktrack.models.audit import ActivityAction, record_activity
from worktrack.models.domain import Item
from worktrack.models.enums import ItemType, LinkType
from worktrack.services.dependency_graph import DependencyGraph
from worktrack.services.errors import NotFoundError
from worktrack.services.routines import RoutineEngine
from worktrack.api.schemas import (
    ItemCreate,
    ItemResponse,
    ItemComplete,
    ItemSummary,
    ItemCompletionResponse,
    BlockerCreate,
    LinkCreate,
    LinkResponse,
    LinkedItem,
    BlockersResponse,
    BlockingResponse,
    LinksResponse,
    DeletedResponse,
    RoutineCreate,
    RoutineUpdate,
    RoutineResponse,
    RoutineStatusResponse,
    RoutinesDueResponse,
    OverdueRoutineResponse,
    OverdueResponse,
    CompletionHistoryEntry,
    RoutineDetailResponse,
    RoutineDateAction,
    CatchUpRequest,
    CompletionResponse,
    SkipResponse,
    RemovalResponse,
    CompleteCatchUpResponse,
    SkipCatchUpResponse,
    ErrorResponse
)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Self-reference or invalid request"},
    404: {"model": ErrorResponse, "description": "Item or routine not found"},
    409: {"model": ErrorResponse, "description": "Link already exists or would close a cycle"},
    422: {"model": ErrorResponse, "description": "Stored recurrence data is malformed"},
}


def get_dependency_graph(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> DependencyGraph:
    return DependencyGraph(db, allow_cycles=settings.ALLOW_BLOCKING_CYCLES)


def get_routine_engine(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> RoutineEngine:
    return RoutineEngine(db, fallback_to_from_date=settings.NEXT_DUE_FALLBACK_TO_FROM_DATE)


def _linked(link, other: Item) -> LinkedItem:
    return LinkedItem(
        link_id=link.id,
        link_type=link.link_type,
        item=ItemSummary.model_validate(other)
    )


# Item endpoints
@router.post("/items", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
def create_item(item_data: ItemCreate, db: Session = Depends(get_db)):
    """Create a one-off task."""
    item = Item(
        title=item_data.title,
        description=item_data.description,
        priority=item_data.priority,
        item_type=ItemType.TASK,
        status=item_data.status
    )
    db.add(item)
    db.flush()
    record_activity(db, item.id, ActivityAction.CREATED, new_value=item.status.value)
    db.commit()
    db.refresh(item)
    return item


@router.get("/items", response_model=List[ItemResponse])
def list_items(db: Session = Depends(get_db)):
    """List all non-deleted items, newest first."""
    return db.query(Item).filter(Item.deleted_at.is_(None)).order_by(Item.created_at.desc()).all()


@router.get("/items/{item_id}", response_model=ItemResponse, responses=ERROR_RESPONSES)
def get_item(item_id: int, graph: DependencyGraph = Depends(get_dependency_graph)):
    return graph.get_item(item_id)


@router.post("/items/{item_id}/complete", response_model=ItemCompletionResponse, responses=ERROR_RESPONSES)
def complete_item(
    item_id: int,
    body: Optional[ItemComplete] = None,
    graph: DependencyGraph = Depends(get_dependency_graph)
):
    """
    Mark an item complete.
    Side effect: items it was blocking lose that blocker, and any left with
    no blockers move from blocked to pending.
    """
    completion = graph.complete_item(item_id, note=body.note if body else None)
    return ItemCompletionResponse(
        item=ItemResponse.model_validate(completion.item),
        previous_status=completion.previous_status,
        unblocked=[ItemSummary.model_validate(d) for d in completion.unblocked]
    )


# Blocking endpoints
@router.get("/items/{item_id}/blockers", response_model=BlockersResponse)
def get_blockers(item_id: int, graph: DependencyGraph = Depends(get_dependency_graph)):
    """Items that must complete before this one can proceed."""
    links = graph.get_blockers(item_id)
    return BlockersResponse(
        item_id=item_id,
        blockers=[_linked(link, link.from_item) for link in links],
        count=len(links)
    )


@router.get("/items/{item_id}/blocking", response_model=BlockingResponse)
def get_blocking(item_id: int, graph: DependencyGraph = Depends(get_dependency_graph)):
    """Items waiting for this one to complete."""
    links = graph.get_blocking(item_id)
    return BlockingResponse(
        item_id=item_id,
        blocking=[_linked(link, link.to_item) for link in links],
        count=len(links)
    )


@router.post(
    "/items/{item_id}/blockers",
    response_model=LinkResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES
)
def add_blocker(
    item_id: int,
    blocker_data: BlockerCreate,
    graph: DependencyGraph = Depends(get_dependency_graph)
):
    """
    Record that another item blocks this one.

    WILL REFUSE if:
    - The item would block itself
    - Either item does not exist
    - The same blocker is already recorded
    """
    return graph.add_blocker(item_id, blocker_data.blocker_id)


@router.delete("/items/{item_id}/blockers/{blocker_id}", response_model=DeletedResponse)
def remove_blocker(item_id: int, blocker_id: int, graph: DependencyGraph = Depends(get_dependency_graph)):
    return DeletedResponse(deleted=graph.remove_blocker(item_id, blocker_id))


# Link endpoints
@router.post("/links", response_model=LinkResponse, status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
def add_link(link_data: LinkCreate, graph: DependencyGraph = Depends(get_dependency_graph)):
    return graph.add_link(link_data.from_id, link_data.to_id, link_data.link_type)


@router.delete("/links", response_model=DeletedResponse)
def remove_link(
    from_id: int,
    to_id: int,
    link_type: LinkType,
    graph: DependencyGraph = Depends(get_dependency_graph)
):
    return DeletedResponse(deleted=graph.remove_link(from_id, to_id, link_type))


@router.get("/items/{item_id}/links", response_model=LinksResponse)
def get_links(item_id: int, graph: DependencyGraph = Depends(get_dependency_graph)):
    outgoing, incoming = graph.get_links(item_id)
    return LinksResponse(
        item_id=item_id,
        outgoing=[_linked(link, link.to_item) for link in outgoing],
        incoming=[_linked(link, link.from_item) for link in incoming]
    )


# Routine endpoints
@router.get("/routines", response_model=List[RoutineStatusResponse], responses=ERROR_RESPONSES)
def list_routines(engine: RoutineEngine = Depends(get_routine_engine)):
    """List all routine templates with their completion stats."""
    return [RoutineStatusResponse.model_validate(r) for r in engine.get_routines()]


@router.post("/routines", response_model=RoutineResponse, status_code=status.HTTP_201_CREATED)
def create_routine(routine_data: RoutineCreate, engine: RoutineEngine = Depends(get_routine_engine)):
    return engine.create_routine(
        title=routine_data.title,
        description=routine_data.description,
        priority=routine_data.priority,
        recurrence_rule=routine_data.recurrence_rule.value,
        recurrence_time=routine_data.recurrence_time,
        recurrence_days=routine_data.recurrence_days,
        recurrence_months=routine_data.recurrence_months
    )


@router.get("/routines/due", response_model=RoutinesDueResponse, responses=ERROR_RESPONSES)
def routines_due(for_date: Optional[date] = None, engine: RoutineEngine = Depends(get_routine_engine)):
    """Routines due on a date (default: today), split by whether they are done."""
    on = for_date or date.today()
    routines = [RoutineStatusResponse.model_validate(r) for r in engine.get_routines_due(on)]
    return RoutinesDueResponse(
        for_date=on,
        total=len(routines),
        pending=[r for r in routines if not r.completed_today],
        completed=[r for r in routines if r.completed_today]
    )


@router.get("/routines/overdue", response_model=OverdueResponse, responses=ERROR_RESPONSES)
def routines_overdue(as_of: Optional[date] = None, engine: RoutineEngine = Depends(get_routine_engine)):
    """Occurrences from the last 30 days that were neither completed nor skipped."""
    overdue = engine.get_overdue_routines(as_of or date.today())
    return OverdueResponse(
        total_overdue=len(overdue),
        total_missed_instances=sum(o.days_overdue for o in overdue),
        routines=[OverdueRoutineResponse.model_validate(o) for o in overdue]
    )


@router.get("/routines/{routine_id}", response_model=RoutineDetailResponse, responses=ERROR_RESPONSES)
def get_routine(routine_id: int, engine: RoutineEngine = Depends(get_routine_engine)):
    """A routine template with its most recent completions."""
    routine = engine.get_routine(routine_id)
    if routine is None:
        raise NotFoundError(f"Routine {routine_id} not found")

    detail = RoutineDetailResponse.model_validate(routine)
    detail.history = [
        CompletionHistoryEntry.model_validate(c) for c in engine.get_routine_history(routine_id)
    ]
    return detail


@router.patch("/routines/{routine_id}", response_model=RoutineResponse, responses=ERROR_RESPONSES)
def update_routine(
    routine_id: int,
    routine_data: RoutineUpdate,
    engine: RoutineEngine = Depends(get_routine_engine)
):
    changes = routine_data.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    if changes.get("recurrence_rule") is not None:
        changes["recurrence_rule"] = changes["recurrence_rule"].value
    return engine.update_routine(routine_id, **changes)


@router.delete("/routines/{routine_id}", response_model=DeletedResponse, responses=ERROR_RESPONSES)
def delete_routine(routine_id: int, engine: RoutineEngine = Depends(get_routine_engine)):
    engine.delete_routine(routine_id)
    return DeletedResponse(deleted=True)


@router.post("/routines/{routine_id}/complete", response_model=CompletionResponse, responses=ERROR_RESPONSES)
def complete_routine(
    routine_id: int,
    action: Optional[RoutineDateAction] = None,
    engine: RoutineEngine = Depends(get_routine_engine)
):
    """Complete a routine for a date (default: today). Repeating the call is harmless."""
    action = action or RoutineDateAction()
    on = action.for_date or date.today()
    result = engine.complete_routine(routine_id, on, action.notes)
    if not result.success:
        raise NotFoundError(result.error)
    return CompletionResponse(
        routine_id=routine_id,
        for_date=on,
        completion_id=result.completion_id,
        already_completed=result.already_completed,
        superseded_skip=result.superseded_skip
    )


@router.post("/routines/{routine_id}/uncomplete", response_model=RemovalResponse)
def uncomplete_routine(
    routine_id: int,
    action: Optional[RoutineDateAction] = None,
    engine: RoutineEngine = Depends(get_routine_engine)
):
    on = (action.for_date if action else None) or date.today()
    result = engine.uncomplete_routine(routine_id, on)
    return RemovalResponse(routine_id=routine_id, for_date=on, deleted=result.deleted)


@router.post("/routines/{routine_id}/skip", response_model=SkipResponse, responses=ERROR_RESPONSES)
def skip_routine(
    routine_id: int,
    action: Optional[RoutineDateAction] = None,
    engine: RoutineEngine = Depends(get_routine_engine)
):
    """Skip a routine for a date (default: today). Repeating the call is harmless."""
    action = action or RoutineDateAction()
    on = action.for_date or date.today()
    result = engine.skip_routine(routine_id, on, action.notes)
    if not result.success:
        raise NotFoundError(result.error)
    return SkipResponse(
        routine_id=routine_id,
        for_date=on,
        skip_id=result.skip_id,
        already_skipped=result.already_skipped,
        already_completed=result.already_completed
    )


@router.post("/routines/{routine_id}/unskip", response_model=RemovalResponse)
def unskip_routine(
    routine_id: int,
    action: Optional[RoutineDateAction] = None,
    engine: RoutineEngine = Depends(get_routine_engine)
):
    on = (action.for_date if action else None) or date.today()
    result = engine.unskip_routine(routine_id, on)
    return RemovalResponse(routine_id=routine_id, for_date=on, deleted=result.deleted)


@router.post(
    "/routines/{routine_id}/complete-all-overdue",
    response_model=CompleteCatchUpResponse,
    responses=ERROR_RESPONSES
)
def complete_all_overdue(
    routine_id: int,
    request: Optional[CatchUpRequest] = None,
    engine: RoutineEngine = Depends(get_routine_engine)
):
    """Complete every unresolved past occurrence, advancing to the next due date."""
    as_of = (request.as_of if request else None) or date.today()
    result = engine.complete_routine_to_next_due(routine_id, as_of)
    if not result.success:
        raise NotFoundError(result.error)
    return CompleteCatchUpResponse(
        routine_id=routine_id,
        completed_count=result.completed_count,
        completed_dates=result.completed_dates,
        next_due=result.next_due
    )


@router.post(
    "/routines/{routine_id}/skip-all-overdue",
    response_model=SkipCatchUpResponse,
    responses=ERROR_RESPONSES
)
def skip_all_overdue(
    routine_id: int,
    request: Optional[CatchUpRequest] = None,
    engine: RoutineEngine = Depends(get_routine_engine)
):
    """Skip every unresolved past occurrence, advancing to the next due date."""
    as_of = (request.as_of if request else None) or date.today()
    result = engine.skip_routine_to_next_due(routine_id, as_of)
    if not result.success:
        raise NotFoundError(result.error)
    return SkipCatchUpResponse(
        routine_id=routine_id,
        skipped_count=result.skipped_count,
        skipped_dates=result.skipped_dates,
        next_due=result.next_due
    )
