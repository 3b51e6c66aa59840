"""Draft documents: editable, deletable and free of side effects."""

from decimal import Decimal

import pytest

from erp_core.app.db import transaction
from erp_core.app.errors import InvalidOperationError, InvalidTransitionError
from erp_core.app.models import PartyLedgerEntry
from erp_core.app.models_commercial import DocumentStatus, Invoice, InvoiceType
from erp_core.app.models_inventory import ItemType, StockMovement
from erp_core.app.services.invoice_service import InvoiceService, ReturnService


@pytest.fixture
def product(make_item):
    return make_item(ItemType.FINISHED_PRODUCT, "Face Cream", quantity=20, unit_cost=30)


@pytest.fixture
def draft(db_session, ctx, product, customer):
    with transaction(db_session):
        invoice = InvoiceService.create_invoice(
            db_session, ctx, InvoiceType.SALES, customer.id, [(product.id, 5, 100)]
        )
    return invoice


def _journal_rows(db_session):
    return (
        db_session.query(StockMovement).filter(StockMovement.reference_type == "sales_invoice").count(),
        db_session.query(PartyLedgerEntry).count(),
    )


class TestDraftInvoice:

    def test_draft_has_no_side_effects(self, db_session, product, customer, draft):
        db_session.refresh(product)
        db_session.refresh(customer)
        assert draft.status == DocumentStatus.DRAFT
        assert Decimal(product.quantity) == Decimal("20")
        assert Decimal(customer.balance) == 0
        assert _journal_rows(db_session) == (0, 0)

    def test_delete_draft(self, db_session, ctx, draft):
        invoice_id = draft.id
        with transaction(db_session):
            InvoiceService.delete_invoice(db_session, ctx, invoice_id)

        assert db_session.get(Invoice, invoice_id) is None
        assert _journal_rows(db_session) == (0, 0)

    def test_update_recalculates_totals(self, db_session, ctx, product, draft):
        with transaction(db_session):
            InvoiceService.update_invoice(
                db_session, ctx, draft.id,
                changes={"discount_amount": 50},
                lines=[(product.id, 3, 120)],
            )

        db_session.refresh(draft)
        assert len(draft.items) == 1
        assert Decimal(draft.subtotal) == Decimal("360")
        assert Decimal(draft.total_amount) == Decimal("310")

    def test_update_rejects_unknown_field(self, db_session, ctx, draft):
        with pytest.raises(InvalidOperationError):
            InvoiceService.update_invoice(db_session, ctx, draft.id, changes={"status": "posted"})

    def test_void_draft_is_rejected(self, db_session, ctx, draft):
        with pytest.raises(InvalidTransitionError):
            InvoiceService.void_invoice(db_session, ctx, draft.id)


class TestPostedInvoice:

    @pytest.fixture
    def posted(self, db_session, ctx, draft):
        with transaction(db_session):
            InvoiceService.post_invoice(db_session, ctx, draft.id)
        return draft

    def test_posted_cannot_be_deleted(self, db_session, ctx, posted):
        with pytest.raises(InvalidTransitionError):
            InvoiceService.delete_invoice(db_session, ctx, posted.id)

    def test_posted_cannot_be_edited(self, db_session, ctx, posted):
        with pytest.raises(InvalidTransitionError):
            InvoiceService.update_invoice(db_session, ctx, posted.id, changes={"notes": "late"})

    def test_post_twice_is_rejected(self, db_session, ctx, posted):
        with pytest.raises(InvalidTransitionError):
            InvoiceService.post_invoice(db_session, ctx, posted.id)

    def test_void_twice_is_rejected(self, db_session, ctx, posted):
        with transaction(db_session):
            InvoiceService.void_invoice(db_session, ctx, posted.id)

        with pytest.raises(InvalidTransitionError):
            InvoiceService.void_invoice(db_session, ctx, posted.id)

    def test_voided_cannot_be_deleted(self, db_session, ctx, posted):
        with transaction(db_session):
            InvoiceService.void_invoice(db_session, ctx, posted.id)

        with pytest.raises(InvalidTransitionError):
            InvoiceService.delete_invoice(db_session, ctx, posted.id)


class TestDraftReturn:

    def test_draft_return_can_be_edited_and_deleted(self, db_session, ctx, product, customer):
        with transaction(db_session):
            document = ReturnService.create_return(
                db_session, ctx, InvoiceType.SALES, customer.id, [(product.id, 1, 100)]
            )
        with transaction(db_session):
            ReturnService.replace_lines(db_session, ctx, document.id, [(product.id, 2, 90)])
        db_session.refresh(document)
        assert Decimal(document.total_amount) == Decimal("180")

        with transaction(db_session):
            ReturnService.delete_return(db_session, ctx, document.id)
        db_session.refresh(product)
        assert Decimal(product.quantity) == Decimal("20")

    def test_return_against_draft_invoice_is_rejected(self, db_session, ctx, product, customer, draft):
        with pytest.raises(InvalidOperationError):
            ReturnService.create_return(
                db_session, ctx, InvoiceType.SALES, customer.id, [(product.id, 1, 100)],
                original_invoice_id=draft.id,
            )
