"""
Posting Engine
==============
One engine applies every stock, party-ledger and treasury effect in the system:
- Document adapters describe a transition as a PostingPlan
  (signed item deltas, signed party deltas, signed treasury deltas)
- stage() locks the affected rows and computes every resulting quantity,
  cost and balance in memory, checking shortages and treasury funds
- apply() writes the rows and appends journal records
- reverse() rebuilds the plan from the journal of a document and applies
  its exact mirror image

Nothing here commits. Callers run a whole transition inside db.transaction()
so staging, writing and the status flip land or fail together.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..errors import InsufficientFundsError, InsufficientStockError
from ..models import FinancialTransaction, Party, PartyLedgerEntry, TransactionType, Treasury
from ..models_inventory import InventoryItem, MovementType, StockMovement
from ..security import RequestContext
from .common import COST, MONEY, QTY, get_next_sequence, get_or_raise, to_decimal

logger = logging.getLogger(__name__)


class CostRule(str, Enum):
    """How a stock delta changes the item's unit cost"""
    KEEP = "keep"
    AVERAGE_IN = "average_in"
    AVERAGE_OUT = "average_out"
    RESTORE = "restore"


# =============================================================================
# COST ARITHMETIC
# =============================================================================

def weighted_average_in(
    old_qty: Decimal, old_cost: Decimal, in_qty: Decimal, in_cost: Decimal
) -> Decimal:
    """(q_old * c_old + q * p) / (q_old + q), or p when nothing remains on hand"""
    total = old_qty + in_qty
    if total > 0:
        return to_decimal((old_qty * old_cost + in_qty * in_cost) / total, COST)
    return to_decimal(in_cost, COST)


def weighted_average_out(
    old_qty: Decimal, old_cost: Decimal, out_qty: Decimal, out_cost: Decimal
) -> Decimal:
    """Take a receipt back out of the average; zero once stock is exhausted"""
    remaining = old_qty - out_qty
    if remaining <= 0:
        return Decimal("0")
    cost = (old_qty * old_cost - out_qty * out_cost) / remaining
    return to_decimal(max(cost, Decimal("0")), COST)


# =============================================================================
# PLAN
# =============================================================================

@dataclass
class StockDelta:
    item_id: int
    quantity: Decimal
    cost_rule: CostRule = CostRule.KEEP
    # Receipt/issue valuation for AVERAGE_*, target cost for RESTORE
    unit_cost: Optional[Decimal] = None
    reason: Optional[str] = None
    # RESTORE only applies when the item still sits at this (quantity, cost)
    expect: Optional[Tuple[Decimal, Decimal]] = None
    fallback_cost: Optional[Decimal] = None
    reverses: Optional[StockMovement] = None


@dataclass
class PartyDelta:
    party_id: int
    # Positive is a debit (party owes us more), negative a credit
    amount: Decimal
    description: Optional[str] = None
    reverses: Optional[PartyLedgerEntry] = None


@dataclass
class TreasuryDelta:
    treasury_id: int
    # Positive is income, negative expense
    amount: Decimal
    category: str
    party_id: Optional[int] = None
    description: Optional[str] = None
    reverses: Optional[FinancialTransaction] = None


@dataclass
class PostingPlan:
    reference_type: str
    reference_id: Optional[int] = None
    reference_number: Optional[str] = None
    entry_date: Optional[date] = None
    stock: List[StockDelta] = field(default_factory=list)
    parties: List[PartyDelta] = field(default_factory=list)
    treasuries: List[TreasuryDelta] = field(default_factory=list)

    def add_stock(self, item_id: int, quantity, **kwargs) -> "PostingPlan":
        quantity = to_decimal(quantity, QTY)
        if quantity != 0:
            self.stock.append(StockDelta(item_id=item_id, quantity=quantity, **kwargs))
        return self

    def add_party(self, party_id: int, amount, description: Optional[str] = None) -> "PostingPlan":
        amount = to_decimal(amount, MONEY)
        if amount != 0:
            self.parties.append(PartyDelta(party_id=party_id, amount=amount, description=description))
        return self

    def add_treasury(
        self,
        treasury_id: int,
        amount,
        category: str,
        party_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> "PostingPlan":
        amount = to_decimal(amount, MONEY)
        if amount != 0:
            self.treasuries.append(TreasuryDelta(
                treasury_id=treasury_id, amount=amount, category=category,
                party_id=party_id, description=description
            ))
        return self

    def is_empty(self) -> bool:
        return not (self.stock or self.parties or self.treasuries)

    def net_stock(self) -> Dict[int, Decimal]:
        totals: Dict[int, Decimal] = {}
        for delta in self.stock:
            totals[delta.item_id] = totals.get(delta.item_id, Decimal("0")) + delta.quantity
        return totals


@dataclass
class Shortage:
    item_id: int
    code: str
    name: str
    required: Decimal
    available: Decimal

    @property
    def shortage(self) -> Decimal:
        return max(Decimal("0"), self.required - self.available)

    def as_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "code": self.code,
            "name": self.name,
            "required": float(self.required),
            "available": float(self.available),
            "shortage": float(self.shortage),
        }


@dataclass
class _StockStep:
    delta: StockDelta
    item: InventoryItem
    qty_before: Decimal
    qty_after: Decimal
    cost_before: Decimal
    cost_after: Decimal
    cost_rule: CostRule


@dataclass
class _BalanceStep:
    delta: object
    row: object
    before: Decimal
    after: Decimal


@dataclass
class StagedPosting:
    plan: PostingPlan
    stock_steps: List[_StockStep]
    party_steps: List[_BalanceStep]
    treasury_steps: List[_BalanceStep]
    shortages: List[Shortage]


@dataclass
class PostingResult:
    movements: List[StockMovement] = field(default_factory=list)
    ledger_entries: List[PartyLedgerEntry] = field(default_factory=list)
    transactions: List[FinancialTransaction] = field(default_factory=list)
    warnings: List[dict] = field(default_factory=list)


# =============================================================================
# ENGINE
# =============================================================================

class PostingEngine:
    """Stages and applies posting plans inside the caller's transaction"""

    def __init__(self, db: Session, ctx: RequestContext, allow_negative_stock: bool = False):
        self.db = db
        self.ctx = ctx
        self.allow_negative_stock = allow_negative_stock

    # -------------------------------------------------------------------------
    # Phase 1: stage
    # -------------------------------------------------------------------------

    def stage(self, plan: PostingPlan) -> StagedPosting:
        """
        Compute every effect of a plan without writing anything.

        Raises:
            InsufficientStockError: If stock would go negative and the
                negative stock policy does not allow it
            InsufficientFundsError: If a treasury would go negative
        """
        items: Dict[int, InventoryItem] = {}
        qty: Dict[int, Decimal] = {}
        cost: Dict[int, Decimal] = {}
        start: Dict[int, Decimal] = {}

        # Lock in id order so concurrent postings cannot deadlock
        for item_id in sorted({d.item_id for d in plan.stock}):
            item = get_or_raise(self.db, InventoryItem, item_id, lock=True, label="Inventory item")
            items[item_id] = item
            qty[item_id] = start[item_id] = to_decimal(item.quantity, QTY)
            cost[item_id] = to_decimal(item.unit_cost, COST)

        stock_steps = []
        for delta in plan.stock:
            q_old, c_old = qty[delta.item_id], cost[delta.item_id]
            c_new, rule = self._next_cost(q_old, c_old, delta)
            q_new = q_old + delta.quantity
            stock_steps.append(_StockStep(
                delta=delta, item=items[delta.item_id],
                qty_before=q_old, qty_after=q_new,
                cost_before=c_old, cost_after=c_new, cost_rule=rule,
            ))
            qty[delta.item_id], cost[delta.item_id] = q_new, c_new

        shortages = []
        for item_id, net in plan.net_stock().items():
            if net < 0 and qty[item_id] < 0:
                item = items[item_id]
                shortages.append(Shortage(
                    item_id=item_id, code=item.code, name=item.name,
                    required=-net, available=start[item_id],
                ))

        if shortages and not self.allow_negative_stock:
            names = ", ".join(f"{s.name} (short {s.shortage})" for s in shortages)
            raise InsufficientStockError(
                f"Insufficient stock: {names}",
                [s.as_dict() for s in shortages],
            )

        party_steps = self._stage_balances(plan.parties, Party, "Party")
        treasury_steps = self._stage_balances(plan.treasuries, Treasury, "Treasury")

        for treasury_id in {d.treasury_id for d in plan.treasuries}:
            steps = [s for s in treasury_steps if s.row.id == treasury_id]
            net = sum((s.delta.amount for s in steps), Decimal("0"))
            if net < 0 and steps[-1].after < 0:
                raise InsufficientFundsError(
                    f"Insufficient funds in treasury {steps[0].row.name}: "
                    f"balance {steps[0].before}, required {-net}"
                )

        return StagedPosting(
            plan=plan,
            stock_steps=stock_steps,
            party_steps=party_steps,
            treasury_steps=treasury_steps,
            shortages=shortages,
        )

    @staticmethod
    def _next_cost(q_old: Decimal, c_old: Decimal, delta: StockDelta) -> Tuple[Decimal, CostRule]:
        rule = delta.cost_rule
        if rule == CostRule.RESTORE:
            if delta.expect is not None and (q_old, c_old) == delta.expect:
                return to_decimal(delta.unit_cost, COST), rule
            # Something moved the item since; take the valuation back out instead
            rule = CostRule.AVERAGE_IN if delta.quantity > 0 else CostRule.AVERAGE_OUT
            price = to_decimal(delta.fallback_cost, COST)
        else:
            price = to_decimal(delta.unit_cost if delta.unit_cost is not None else c_old, COST)

        if rule == CostRule.AVERAGE_IN:
            return weighted_average_in(q_old, c_old, delta.quantity, price), rule
        if rule == CostRule.AVERAGE_OUT:
            return weighted_average_out(q_old, c_old, -delta.quantity, price), rule
        return c_old, rule

    def _stage_balances(self, deltas, model, label: str) -> List[_BalanceStep]:
        key = "party_id" if model is Party else "treasury_id"
        rows = {}
        for row_id in sorted({getattr(d, key) for d in deltas}):
            rows[row_id] = get_or_raise(self.db, model, row_id, lock=True, label=label)
        running = {row_id: to_decimal(row.balance, MONEY) for row_id, row in rows.items()}

        steps = []
        for delta in deltas:
            row_id = getattr(delta, key)
            before = running[row_id]
            after = before + delta.amount
            steps.append(_BalanceStep(delta=delta, row=rows[row_id], before=before, after=after))
            running[row_id] = after
        return steps

    # -------------------------------------------------------------------------
    # Phase 2: apply
    # -------------------------------------------------------------------------

    def apply(self, staged: StagedPosting) -> PostingResult:
        plan = staged.plan
        result = PostingResult(warnings=[s.as_dict() for s in staged.shortages])
        now = datetime.utcnow()
        entry_date = plan.entry_date or now.date()

        for step in staged.stock_steps:
            step.item.quantity = step.qty_after
            step.item.unit_cost = step.cost_after
            movement = StockMovement(
                item_id=step.item.id,
                movement_type=MovementType.IN if step.delta.quantity > 0 else MovementType.OUT,
                quantity_change=step.delta.quantity,
                quantity_before=step.qty_before,
                quantity_after=step.qty_after,
                unit_cost=self._movement_cost(step),
                cost_before=step.cost_before,
                cost_after=step.cost_after,
                cost_rule=step.cost_rule.value,
                reference_type=plan.reference_type,
                reference_id=plan.reference_id,
                reference_number=plan.reference_number,
                reason=step.delta.reason,
                created_by=self.ctx.user_id,
                movement_date=now,
            )
            self._link_reversal(movement, step.delta.reverses)
            self.db.add(movement)
            result.movements.append(movement)

        for step in staged.party_steps:
            delta = step.delta
            step.row.balance = step.after
            entry = PartyLedgerEntry(
                party_id=step.row.id,
                entry_date=entry_date,
                debit=delta.amount if delta.amount > 0 else Decimal("0"),
                credit=-delta.amount if delta.amount < 0 else Decimal("0"),
                amount=delta.amount,
                balance_after=step.after,
                description=delta.description,
                reference_type=plan.reference_type,
                reference_id=plan.reference_id,
                reference_number=plan.reference_number,
                created_by=self.ctx.user_id,
            )
            self._link_reversal(entry, delta.reverses)
            self.db.add(entry)
            result.ledger_entries.append(entry)

        for step in staged.treasury_steps:
            delta = step.delta
            step.row.balance = step.after
            txn = FinancialTransaction(
                transaction_number=get_next_sequence(self.db, "financial_transaction", "TRX-", padding=6),
                treasury_id=step.row.id,
                party_id=delta.party_id,
                transaction_type=TransactionType.INCOME if delta.amount > 0 else TransactionType.EXPENSE,
                category=delta.category,
                amount=abs(delta.amount),
                balance_after=step.after,
                description=delta.description,
                transaction_date=entry_date,
                reference_type=plan.reference_type,
                reference_id=plan.reference_id,
                reference_number=plan.reference_number,
                created_by=self.ctx.user_id,
            )
            self._link_reversal(txn, delta.reverses)
            self.db.add(txn)
            result.transactions.append(txn)

        self.db.flush()

        if staged.shortages:
            logger.warning(
                "%s %s posted with negative stock: %s",
                plan.reference_type, plan.reference_number,
                ", ".join(f"{s.code} short {s.shortage}" for s in staged.shortages),
            )
        logger.info(
            "Posted %s %s: %d stock deltas, ledger %s, treasury %s",
            plan.reference_type, plan.reference_number, len(staged.stock_steps),
            sum((s.delta.amount for s in staged.party_steps), Decimal("0")),
            sum((s.delta.amount for s in staged.treasury_steps), Decimal("0")),
        )
        return result

    @staticmethod
    def _movement_cost(step: _StockStep) -> Optional[Decimal]:
        """Valuation recorded on the movement: receipt price, or issue cost for KEEP outflows"""
        if step.cost_rule == CostRule.RESTORE:
            return None
        if step.delta.unit_cost is not None:
            return step.delta.unit_cost
        if step.cost_rule == CostRule.KEEP and step.delta.quantity < 0:
            return step.cost_before
        return None

    @staticmethod
    def _link_reversal(row, original) -> None:
        if original is not None:
            row.reversal_of_id = original.id
            original.is_reversed = True

    def post(self, plan: PostingPlan) -> PostingResult:
        return self.apply(self.stage(plan))

    # -------------------------------------------------------------------------
    # Reversal
    # -------------------------------------------------------------------------

    def journal_plan(self, reference_type: str, reference_id: int) -> PostingPlan:
        """
        The mirror image of everything still in effect for a document.

        Stock deltas are listed newest first so cost restoration sees each
        item exactly as the original movement left it.
        """
        movements = self.db.query(StockMovement).filter(
            StockMovement.reference_type == reference_type,
            StockMovement.reference_id == reference_id,
            StockMovement.reversal_of_id.is_(None),
            StockMovement.is_reversed.is_(False),
        ).order_by(StockMovement.id.desc()).all()

        entries = self.db.query(PartyLedgerEntry).filter(
            PartyLedgerEntry.reference_type == reference_type,
            PartyLedgerEntry.reference_id == reference_id,
            PartyLedgerEntry.reversal_of_id.is_(None),
            PartyLedgerEntry.is_reversed.is_(False),
        ).order_by(PartyLedgerEntry.id.desc()).all()

        transactions = self.db.query(FinancialTransaction).filter(
            FinancialTransaction.reference_type == reference_type,
            FinancialTransaction.reference_id == reference_id,
            FinancialTransaction.reversal_of_id.is_(None),
            FinancialTransaction.is_reversed.is_(False),
        ).order_by(FinancialTransaction.id.desc()).all()

        plan = PostingPlan(reference_type=reference_type, reference_id=reference_id)

        for m in movements:
            plan.stock.append(self._inverse_movement(m))
            plan.reference_number = plan.reference_number or m.reference_number

        for e in entries:
            plan.parties.append(PartyDelta(
                party_id=e.party_id,
                amount=-to_decimal(e.amount, MONEY),
                description=f"Reversal: {e.description or ''}".strip(),
                reverses=e,
            ))
            plan.reference_number = plan.reference_number or e.reference_number

        for t in transactions:
            plan.treasuries.append(TreasuryDelta(
                treasury_id=t.treasury_id,
                amount=-to_decimal(t.signed_amount, MONEY),
                category=f"{t.category}_reversal",
                party_id=t.party_id,
                description=f"Reversal: {t.description or ''}".strip(),
                reverses=t,
            ))
            plan.reference_number = plan.reference_number or t.reference_number

        return plan

    @staticmethod
    def _inverse_movement(m: StockMovement) -> StockDelta:
        quantity = -to_decimal(m.quantity_change, QTY)
        reason = f"Reversal: {m.reason or ''}".strip()
        cost_before = to_decimal(m.cost_before, COST)
        cost_after = to_decimal(m.cost_after, COST)

        if cost_before == cost_after:
            if quantity > 0 and m.unit_cost is not None:
                # Issued stock comes back at the cost it left with
                return StockDelta(
                    item_id=m.item_id, quantity=quantity,
                    cost_rule=CostRule.AVERAGE_IN, unit_cost=to_decimal(m.unit_cost, COST),
                    reason=reason, reverses=m,
                )
            return StockDelta(item_id=m.item_id, quantity=quantity, reason=reason, reverses=m)

        return StockDelta(
            item_id=m.item_id,
            quantity=quantity,
            cost_rule=CostRule.RESTORE,
            unit_cost=cost_before,
            expect=(to_decimal(m.quantity_after, QTY), cost_after),
            fallback_cost=to_decimal(m.unit_cost, COST) if m.unit_cost is not None else cost_after,
            reason=reason,
            reverses=m,
        )

    def reverse(self, reference_type: str, reference_id: int) -> PostingResult:
        return self.post(self.journal_plan(reference_type, reference_id))
