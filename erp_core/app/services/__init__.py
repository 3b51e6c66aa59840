"""
Services package initialization.
Business logic layer for inventory, manufacturing, commercial and treasury operations.
"""

from .common import get_next_sequence, to_decimal
from .costing_service import CostingService, compute_recipe_cost
from .inventory_service import InventoryQueryService, InventoryService
from .invoice_service import InvoiceService, ReturnService
from .order_service import OrderService
from .party_service import PartyService
from .posting_service import CostRule, PostingEngine, PostingPlan, PostingResult
from .report_service import ReportService
from .requirements_service import RequirementsService, compute_shortage
from .stocktaking_service import StocktakingService
from .treasury_service import TreasuryService

__all__ = [
    'CostingService',
    'CostRule',
    'InventoryQueryService',
    'InventoryService',
    'InvoiceService',
    'OrderService',
    'PartyService',
    'PostingEngine',
    'PostingPlan',
    'PostingResult',
    'ReportService',
    'RequirementsService',
    'ReturnService',
    'StocktakingService',
    'TreasuryService',
    'compute_recipe_cost',
    'compute_shortage',
    'get_next_sequence',
    'to_decimal',
]
