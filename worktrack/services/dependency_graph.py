"""
Dependency graph between items.

A BLOCKS link "A -> B" means B cannot proceed while A is unresolved. When A is
completed every link out of A is removed, and each dependent that has no
blockers left and is currently BLOCKED goes back to PENDING. The cascade is
one hop deep: a chain A -> B -> C only frees B when A completes.

RELATED and DUPLICATE links are annotations with no behaviour.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from worktrack.logger import get_logger
from worktrack.models.audit import ActivityAction, record_activity
from worktrack.models.domain import Item, ItemLink
from worktrack.models.enums import ItemStatus, LinkType
from worktrack.services.errors import (
    BlockingCycleError,
    ConflictError,
    NotFoundError,
    SelfReferenceError,
)

logger = get_logger(__name__)


@dataclass
class ItemCompletion:
    """Outcome of completing an item, including the dependents it freed."""
    item: Item
    previous_status: ItemStatus
    unblocked: List[Item] = field(default_factory=list)


class DependencyGraph:
    """Maintains item links and cascades unblocking for one database session."""

    def __init__(self, db: Session, allow_cycles: bool = True):
        self.db = db
        self.allow_cycles = allow_cycles

    def get_item(self, item_id: int, label: str = "Item") -> Item:
        item = self.db.query(Item).filter(
            Item.id == item_id,
            Item.deleted_at.is_(None)
        ).first()
        if item is None:
            raise NotFoundError(f"{label} #{item_id} not found")
        return item

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _links_query(self, link_type: Optional[LinkType] = None):
        query = self.db.query(ItemLink)
        if link_type is not None:
            query = query.filter(ItemLink.link_type == link_type)
        return query

    def get_blockers(self, item_id: int) -> List[ItemLink]:
        """Links into item_id: the items that must finish first."""
        return self._links_query(LinkType.BLOCKS).filter(
            ItemLink.to_id == item_id
        ).order_by(ItemLink.id).all()

    def get_blocking(self, item_id: int) -> List[ItemLink]:
        """Links out of item_id: the items waiting on it."""
        return self._links_query(LinkType.BLOCKS).filter(
            ItemLink.from_id == item_id
        ).order_by(ItemLink.id).all()

    def get_links(self, item_id: int) -> Tuple[List[ItemLink], List[ItemLink]]:
        """(outgoing, incoming) links of every type."""
        outgoing = self._links_query().filter(ItemLink.from_id == item_id).order_by(ItemLink.id).all()
        incoming = self._links_query().filter(ItemLink.to_id == item_id).order_by(ItemLink.id).all()
        return outgoing, incoming

    def find_blocking_path(self, start_id: int, target_id: int) -> List[int]:
        """
        Shortest chain of BLOCKS links leading from start_id to target_id.

        Returns the item ids along the chain (both ends included), or an
        empty list when target_id is unreachable.
        """
        parents = {start_id: None}
        queue = deque([start_id])
        while queue:
            current = queue.popleft()
            if current == target_id:
                path = []
                while current is not None:
                    path.append(current)
                    current = parents[current]
                return list(reversed(path))

            next_ids = self.db.query(ItemLink.to_id).filter(
                ItemLink.from_id == current,
                ItemLink.link_type == LinkType.BLOCKS
            ).all()
            for (next_id,) in next_ids:
                if next_id not in parents:
                    parents[next_id] = current
                    queue.append(next_id)
        return []

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _create_link(self, from_id: int, to_id: int, link_type: LinkType) -> ItemLink:
        existing = self._links_query(link_type).filter(
            ItemLink.from_id == from_id,
            ItemLink.to_id == to_id
        ).first()
        if existing:
            if link_type == LinkType.BLOCKS:
                raise ConflictError(f"#{from_id} already blocks #{to_id}")
            raise ConflictError(f"Link already exists: #{from_id} {link_type.value} #{to_id}")

        if link_type == LinkType.BLOCKS and not self.allow_cycles:
            # from -> to closes a cycle if `to` can already reach `from`
            path = self.find_blocking_path(to_id, from_id)
            if path:
                chain = " -> ".join(f"#{i}" for i in path)
                raise BlockingCycleError(
                    f"#{from_id} cannot block #{to_id}: {chain} already blocks it",
                    path=path
                )

        link = ItemLink(from_id=from_id, to_id=to_id, link_type=link_type)
        self.db.add(link)
        try:
            self.db.flush()
        except IntegrityError:
            # Lost a race against an identical insert
            self.db.rollback()
            raise ConflictError(f"Link already exists: #{from_id} {link_type.value} #{to_id}")
        return link

    def add_blocker(self, item_id: int, blocker_id: int) -> ItemLink:
        """Record that blocker_id blocks item_id."""
        if item_id == blocker_id:
            raise SelfReferenceError("An item cannot block itself")

        self.get_item(item_id)
        blocker = self.get_item(blocker_id, label="Blocker")

        link = self._create_link(blocker_id, item_id, LinkType.BLOCKS)
        record_activity(
            self.db,
            item_id,
            ActivityAction.BLOCKED,
            detail=f"Blocked by #{blocker_id}: {blocker.title}"
        )
        self.db.commit()
        self.db.refresh(link)

        logger.info("Item %s now blocks item %s", blocker_id, item_id)
        return link

    def remove_blocker(self, item_id: int, blocker_id: int) -> bool:
        """Drop the blocker_id -> item_id link. Returns whether anything was removed."""
        count = self._links_query(LinkType.BLOCKS).filter(
            ItemLink.from_id == blocker_id,
            ItemLink.to_id == item_id
        ).delete(synchronize_session=False)

        if count > 0:
            record_activity(
                self.db,
                item_id,
                ActivityAction.UNBLOCKED,
                detail=f"No longer blocked by #{blocker_id}"
            )
            logger.info("Item %s no longer blocks item %s", blocker_id, item_id)
        self.db.commit()
        return count > 0

    def add_link(self, from_id: int, to_id: int, link_type: LinkType) -> ItemLink:
        """Generic link. BLOCKS links go through add_blocker."""
        link_type = LinkType(link_type)
        if link_type == LinkType.BLOCKS:
            return self.add_blocker(to_id, from_id)
        if from_id == to_id:
            raise SelfReferenceError("An item cannot link to itself")

        self.get_item(from_id)
        self.get_item(to_id)

        link = self._create_link(from_id, to_id, link_type)
        record_activity(
            self.db,
            from_id,
            ActivityAction.LINKED,
            detail=f"{link_type.value} #{to_id}"
        )
        self.db.commit()
        self.db.refresh(link)
        return link

    def remove_link(self, from_id: int, to_id: int, link_type: LinkType) -> bool:
        link_type = LinkType(link_type)
        if link_type == LinkType.BLOCKS:
            return self.remove_blocker(to_id, from_id)

        count = self._links_query(link_type).filter(
            ItemLink.from_id == from_id,
            ItemLink.to_id == to_id
        ).delete(synchronize_session=False)
        if count > 0:
            record_activity(
                self.db,
                from_id,
                ActivityAction.UNLINKED,
                detail=f"{link_type.value} #{to_id}"
            )
        self.db.commit()
        return count > 0

    def _cascade_unblock(self, item: Item) -> List[Item]:
        """Remove every link out of a completed item and free dependents with no blockers left."""
        links = self.get_blocking(item.id)
        unblocked = []

        for link in links:
            dependent = link.to_item
            self.db.delete(link)
            self.db.flush()

            remaining = self._links_query(LinkType.BLOCKS).filter(
                ItemLink.to_id == dependent.id
            ).count()

            if remaining == 0 and dependent.status == ItemStatus.BLOCKED:
                dependent.status = ItemStatus.PENDING
                record_activity(
                    self.db,
                    dependent.id,
                    ActivityAction.UNBLOCKED,
                    detail=f"Auto-unblocked: #{item.id} was completed",
                    old_value=ItemStatus.BLOCKED.value,
                    new_value=ItemStatus.PENDING.value,
                    created_by="system"
                )
                unblocked.append(dependent)

        return unblocked

    def complete_item(self, item_id: int, note: Optional[str] = None) -> ItemCompletion:
        """
        Mark an item complete and cascade to the items it was blocking.

        The status change, link removals and unblocks commit together or not
        at all.
        """
        item = self.get_item(item_id)
        previous_status = item.status

        try:
            item.status = ItemStatus.COMPLETE
            item.completed_at = datetime.utcnow()
            unblocked = self._cascade_unblock(item)
            record_activity(
                self.db,
                item_id,
                ActivityAction.STATUS_CHANGED,
                detail=note or None,
                old_value=previous_status.value,
                new_value=ItemStatus.COMPLETE.value
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if unblocked:
            logger.info(
                "Completing item %s unblocked %s",
                item_id, ", ".join(str(d.id) for d in unblocked)
            )
        return ItemCompletion(item=item, previous_status=previous_status, unblocked=unblocked)
