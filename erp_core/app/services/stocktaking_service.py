"""
Stocktaking Service
===================
Physical count sessions:

    draft -> in_progress   snapshot system quantities for the counted items
    in_progress            record counted quantities
    in_progress -> completed   post counted - system per line
    draft / in_progress -> cancelled
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models_inventory import (
    InventoryItem, ItemType, StocktakingLine, StocktakingSession,
    StocktakingStatus, StocktakingType
)
from ..security import AuditTrail, Permission, RequestContext
from .common import COST, QTY, ensure_status, get_next_sequence, get_or_raise, to_decimal
from .posting_service import PostingEngine, PostingPlan, PostingResult

logger = logging.getLogger(__name__)


class StocktakingService:

    @staticmethod
    def create_session(
        db: Session,
        ctx: RequestContext,
        session_type: StocktakingType = StocktakingType.FULL,
        item_types: Optional[Iterable[ItemType]] = None,
        notes: Optional[str] = None,
    ) -> StocktakingSession:
        ctx.require(Permission.STOCKTAKING_COUNT)
        session_type = StocktakingType(session_type)

        types = [ItemType(t).value for t in (item_types or [])]
        if session_type == StocktakingType.PARTIAL and not types:
            raise InvalidOperationError("A partial stocktaking needs at least one item type")

        session = StocktakingSession(
            code=get_next_sequence(db, "stocktaking", "ST-"),
            session_type=session_type,
            status=StocktakingStatus.DRAFT,
            item_types=",".join(types) if session_type == StocktakingType.PARTIAL else None,
            notes=notes,
            created_by=ctx.user_id,
        )
        db.add(session)
        db.flush()

        AuditTrail.record(db, ctx, "create", "stocktaking", session.id, {
            "code": session.code, "session_type": session_type.value, "item_types": types
        })
        return session

    @staticmethod
    def start(db: Session, ctx: RequestContext, session_id: int) -> StocktakingSession:
        """Snapshot system quantities; counts start equal to the snapshot"""
        ctx.require(Permission.STOCKTAKING_COUNT)
        session = get_or_raise(db, StocktakingSession, session_id, lock=True, label="Stocktaking session")
        ensure_status(session, {StocktakingStatus.DRAFT}, "start", f"stocktaking {session.code}")

        query = db.query(InventoryItem).filter(InventoryItem.is_active.is_(True))
        if session.session_type == StocktakingType.PARTIAL:
            types = [ItemType(t) for t in session.item_types.split(",")]
            query = query.filter(InventoryItem.item_type.in_(types))

        for item in query.order_by(InventoryItem.code).all():
            quantity = to_decimal(item.quantity, QTY)
            session.lines.append(StocktakingLine(
                item_id=item.id,
                system_quantity=quantity,
                counted_quantity=quantity,
                unit_cost=to_decimal(item.unit_cost, COST),
            ))

        session.status = StocktakingStatus.IN_PROGRESS
        session.started_at = datetime.utcnow()
        db.flush()
        logger.info("Stocktaking %s started with %d lines", session.code, len(session.lines))
        return session

    @staticmethod
    def record_count(
        db: Session,
        ctx: RequestContext,
        session_id: int,
        item_id: int,
        counted_quantity,
        notes: Optional[str] = None,
    ) -> StocktakingLine:
        ctx.require(Permission.STOCKTAKING_COUNT)
        session = get_or_raise(db, StocktakingSession, session_id, label="Stocktaking session")
        ensure_status(session, {StocktakingStatus.IN_PROGRESS}, "count", f"stocktaking {session.code}")

        counted = to_decimal(counted_quantity, QTY)
        if counted < 0:
            raise InvalidOperationError("Counted quantity cannot be negative")

        line = db.query(StocktakingLine).filter(
            StocktakingLine.session_id == session.id,
            StocktakingLine.item_id == item_id,
        ).first()
        if line is None:
            raise InvalidOperationError(f"Item {item_id} is not part of stocktaking {session.code}")

        line.counted_quantity = counted
        line.notes = notes
        line.counted_at = datetime.utcnow()
        return line

    @staticmethod
    def reconcile(
        db: Session,
        ctx: RequestContext,
        session_id: int,
        allow_negative_stock: bool = False,
    ) -> Tuple[StocktakingSession, PostingResult]:
        """Post every non-zero difference and complete the session"""
        ctx.require(Permission.STOCKTAKING_RECONCILE)
        session = get_or_raise(db, StocktakingSession, session_id, lock=True, label="Stocktaking session")
        ensure_status(session, {StocktakingStatus.IN_PROGRESS}, "reconcile", f"stocktaking {session.code}")

        plan = PostingPlan(
            reference_type="stocktaking",
            reference_id=session.id,
            reference_number=session.code,
        )
        for line in session.lines:
            plan.add_stock(
                line.item_id, line.difference,
                reason=f"Stocktaking {session.code}: counted {line.counted_quantity}, "
                       f"system {line.system_quantity}",
            )
        result = PostingEngine(db, ctx, allow_negative_stock).post(plan)

        session.status = StocktakingStatus.COMPLETED
        session.completed_at = datetime.utcnow()

        AuditTrail.record(db, ctx, "reconcile", "stocktaking", session.id, {
            "code": session.code,
            "adjusted_items": len(plan.stock),
            "net_change": str(sum((d.quantity for d in plan.stock), Decimal("0"))),
        })
        return session, result

    @staticmethod
    def cancel(db: Session, ctx: RequestContext, session_id: int) -> StocktakingSession:
        ctx.require(Permission.STOCKTAKING_COUNT)
        session = get_or_raise(db, StocktakingSession, session_id, lock=True, label="Stocktaking session")
        ensure_status(
            session, {StocktakingStatus.DRAFT, StocktakingStatus.IN_PROGRESS},
            "cancel", f"stocktaking {session.code}",
        )
        session.status = StocktakingStatus.CANCELLED
        AuditTrail.record(db, ctx, "cancel", "stocktaking", session.id, {"code": session.code})
        return session
