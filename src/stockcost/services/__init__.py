from .fx_service import FxService
from .inventory_service import InventoryService
from .contacts_service import ContactsService
from .sales_service import SalesService
from .purchase_service import PurchaseService
from .operations_service import OperationsService

__all__ = [
    "FxService",
    "InventoryService",
    "ContactsService",
    "SalesService",
    "PurchaseService",
    "OperationsService",
]
