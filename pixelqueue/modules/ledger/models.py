"""
Credit Ledger Models

Append-only entries plus a cached balance per account. Each job can carry
at most one debit and one refund (enforced by a unique constraint).
"""

import uuid
from enum import Enum
from typing import Optional
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class LedgerEntryKind(str, Enum):
    GRANT = "grant"
    DEBIT = "debit"
    REFUND = "refund"


class CreditAccount(SQLModel, table=True):
    __tablename__ = "credit_accounts"

    account_id: str = Field(primary_key=True)
    balance: int = Field(default=0)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "credit_ledger"
    __table_args__ = (UniqueConstraint("job_id", "kind", name="uq_ledger_job_kind"),)

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    account_id: str = Field(index=True)
    job_id: Optional[str] = Field(default=None, index=True)
    kind: str
    amount: int  # signed: negative for debits
    balance_after: int
    created_at: datetime = Field(default_factory=datetime.utcnow)
