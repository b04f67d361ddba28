from .tenancy import Tenant, Product, CustomerAccount
from .ledger import LedgerEntry
from .summary import StockSummary
from .operations import OperationRecord, ReviewEvent
from .sync import SyncRecord

__all__ = [
    'Tenant', 'Product', 'CustomerAccount',
    'LedgerEntry',
    'StockSummary',
    'OperationRecord', 'ReviewEvent',
    'SyncRecord',
]
