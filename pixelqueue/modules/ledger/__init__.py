"""
Ledger Module

Credit balances, debits on admission and refunds on permanent failure.
"""

from pixelqueue.modules.ledger.models import CreditAccount, LedgerEntry, LedgerEntryKind

__all__ = ["CreditAccount", "LedgerEntry", "LedgerEntryKind"]
