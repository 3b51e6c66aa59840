"""
Party Service
=============
Customers and suppliers: maintenance, opening balances and statements of
account. Balances only move through ledger entries written by the posting
engine.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models import Party, PartyLedgerEntry, PartyType
from ..models_commercial import Invoice
from ..security import AuditTrail, Permission, RequestContext
from .common import MONEY, get_or_raise, to_decimal
from .posting_service import PostingEngine, PostingPlan

logger = logging.getLogger(__name__)


_EDITABLE_FIELDS = (
    "name", "phone", "email", "address", "tax_number",
    "commercial_record", "credit_limit", "is_active",
)


class PartyService:
    """Customer / supplier maintenance and statements"""

    @staticmethod
    def create_party(
        db: Session,
        ctx: RequestContext,
        name: str,
        party_type: PartyType,
        opening_balance=0,
        **fields,
    ) -> Party:
        """
        Create a party. A non-zero opening balance is written as the first
        ledger entry (positive: the party owes us).
        """
        ctx.require(Permission.PARTY_MANAGE)
        for key in fields:
            if key not in _EDITABLE_FIELDS:
                raise InvalidOperationError(f"Unknown party field {key}")

        party = Party(name=name, party_type=PartyType(party_type), balance=Decimal("0"), **fields)
        db.add(party)
        db.flush()

        opening = to_decimal(opening_balance, MONEY)
        if opening != 0:
            plan = PostingPlan(
                reference_type="party_opening",
                reference_id=party.id,
                reference_number=party.name,
            ).add_party(party.id, opening, "Opening balance")
            PostingEngine(db, ctx).post(plan)

        AuditTrail.record(db, ctx, "create", "party", party.id, {
            "name": name, "party_type": party.party_type.value, "opening_balance": str(opening)
        })
        return party

    @staticmethod
    def update_party(db: Session, ctx: RequestContext, party_id: int, changes: Dict) -> Party:
        ctx.require(Permission.PARTY_MANAGE)
        party = get_or_raise(db, Party, party_id, lock=True, label="Party")
        for key, value in changes.items():
            if key not in _EDITABLE_FIELDS:
                raise InvalidOperationError(f"Field {key} cannot be edited")
            setattr(party, key, value)
        AuditTrail.record(db, ctx, "update", "party", party.id, changes)
        return party

    @staticmethod
    def delete_party(db: Session, ctx: RequestContext, party_id: int) -> str:
        """Delete a party without history, otherwise deactivate it"""
        ctx.require(Permission.PARTY_MANAGE)
        party = get_or_raise(db, Party, party_id, lock=True, label="Party")

        has_history = (
            db.query(PartyLedgerEntry).filter(PartyLedgerEntry.party_id == party.id).first() is not None
            or db.query(Invoice).filter(Invoice.party_id == party.id).first() is not None
        )
        if has_history:
            party.is_active = False
            outcome = "deactivated"
        else:
            db.delete(party)
            outcome = "deleted"

        AuditTrail.record(db, ctx, outcome[:-1], "party", party_id, {"name": party.name})
        return outcome

    @staticmethod
    def list_parties(
        db: Session,
        party_type: Optional[PartyType] = None,
        search: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[Party]:
        query = db.query(Party)
        if party_type:
            query = query.filter(Party.party_type == PartyType(party_type))
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(Party.name.ilike(pattern), Party.phone.ilike(pattern)))
        if not include_inactive:
            query = query.filter(Party.is_active.is_(True))
        return query.order_by(Party.name).all()

    @staticmethod
    def statement(db: Session, party_id: int, date_from=None, date_to=None) -> dict:
        """
        Statement of account with a running balance.

        Entries before `date_from` are folded into the opening balance so
        the running column always ends at the party's true balance for
        the period.
        """
        party = get_or_raise(db, Party, party_id, label="Party")

        query = db.query(PartyLedgerEntry).filter(PartyLedgerEntry.party_id == party.id)
        opening = Decimal("0")
        if date_from:
            before = query.filter(PartyLedgerEntry.entry_date < date_from).all()
            opening = sum((Decimal(e.amount) for e in before), Decimal("0"))
            query = query.filter(PartyLedgerEntry.entry_date >= date_from)
        if date_to:
            query = query.filter(PartyLedgerEntry.entry_date <= date_to)

        entries = query.order_by(PartyLedgerEntry.entry_date, PartyLedgerEntry.id).all()

        running = opening
        total_debit = total_credit = Decimal("0")
        rows = []
        for entry in entries:
            running += Decimal(entry.amount)
            total_debit += Decimal(entry.debit)
            total_credit += Decimal(entry.credit)
            rows.append({
                "id": entry.id,
                "date": entry.entry_date.isoformat(),
                "description": entry.description,
                "reference_type": entry.reference_type,
                "reference_number": entry.reference_number,
                "debit": float(entry.debit),
                "credit": float(entry.credit),
                "balance": float(to_decimal(running, MONEY)),
                "is_reversal": entry.reversal_of_id is not None,
            })

        return {
            "party_id": party.id,
            "party_name": party.name,
            "party_type": party.party_type.value,
            "date_from": date_from.isoformat() if date_from else None,
            "date_to": date_to.isoformat() if date_to else None,
            "opening_balance": float(to_decimal(opening, MONEY)),
            "total_debit": float(to_decimal(total_debit, MONEY)),
            "total_credit": float(to_decimal(total_credit, MONEY)),
            "closing_balance": float(to_decimal(running, MONEY)),
            "entries": rows,
        }
