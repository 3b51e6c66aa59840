"""
Shared helpers for the service layer: decimal precision, row loading with
locks and document number sequences.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Type, TypeVar

from sqlalchemy.orm import Session

from ..errors import InvalidTransitionError, NotFoundError
from ..models import NumberSequence


QTY = Decimal("0.001")
COST = Decimal("0.0001")
MONEY = Decimal("0.01")

T = TypeVar("T")


def to_decimal(value, places: Decimal = QTY) -> Decimal:
    """Normalise int/float/str/Decimal/None to a Decimal with fixed precision"""
    if value is None:
        value = 0
    return Decimal(str(value)).quantize(places, rounding=ROUND_HALF_UP)


def get_or_raise(
    db: Session,
    model: Type[T],
    row_id: int,
    lock: bool = False,
    label: Optional[str] = None,
) -> T:
    """
    Load a row by primary key, optionally with SELECT ... FOR UPDATE.

    Raises:
        NotFoundError: If the row does not exist
    """
    query = db.query(model).filter(model.id == row_id)
    if lock:
        query = query.with_for_update()
    row = query.first()
    if row is None:
        raise NotFoundError(f"{label or model.__name__} {row_id} not found")
    return row


def get_next_sequence(db: Session, sequence_name: str, prefix: str = "", padding: int = 4) -> str:
    """
    Next document code for a sequence, e.g. PO-0001.

    The sequence row is locked with SELECT FOR UPDATE so concurrent
    transactions never hand out the same number.
    """
    seq = db.query(NumberSequence).filter(
        NumberSequence.sequence_name == sequence_name
    ).with_for_update().first()

    if not seq:
        seq = NumberSequence(
            sequence_name=sequence_name,
            prefix=prefix,
            current_number=0,
            padding=padding
        )
        db.add(seq)

    seq.current_number = (seq.current_number or 0) + 1
    db.flush()

    number = seq.current_number
    width = seq.padding or padding
    # Numbers beyond the padding width are written out in full
    return f"{seq.prefix or prefix}{str(number).zfill(width)}"


def ensure_status(document, allowed, action: str, label: str) -> None:
    """
    Guard a lifecycle transition.

    Raises:
        InvalidTransitionError: If the document's status is not in `allowed`
    """
    if document.status not in allowed:
        current = getattr(document.status, "value", document.status)
        raise InvalidTransitionError(f"Cannot {action} {label}: status is {current}")
