"""
Credit Ledger

Balance mutations for accounts: grants, one debit per admitted job and one
compensating refund per failed job. The refund is not called by the
dead-letter handler; job stores apply it when they observe a transition to
``failed``, the same way the production datastore trigger does.

Two implementations share one contract:
- InMemoryCreditLedger for tests and local runs
- SqlCreditLedger on SQLModel/SQLAlchemy async sessions
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pixelqueue.core.exceptions import InsufficientCreditsError, InvalidInputError
from pixelqueue.core.logging import get_logger
from pixelqueue.modules.ledger.models import CreditAccount, LedgerEntry, LedgerEntryKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class DebitResult:
    ok: bool
    balance_after: int


@dataclass(frozen=True)
class RefundResult:
    ok: bool
    refunded: bool  # False when already refunded or nothing was debited
    balance_after: Optional[int] = None


class CreditLedger(ABC):
    """Interface every ledger backend implements."""

    @abstractmethod
    async def balance(self, account_id: str) -> int:
        pass

    @abstractmethod
    async def grant(self, account_id: str, amount: int) -> int:
        """Add credits (purchases, promotions). Returns the new balance."""
        pass

    @abstractmethod
    async def debit(self, account_id: str, amount: int, job_id: str) -> DebitResult:
        """Take ``amount`` credits for ``job_id``. Raises InsufficientCreditsError."""
        pass

    @abstractmethod
    async def refund(self, job_id: str, amount: Optional[int] = None) -> RefundResult:
        """Return the job's debit. Safe to call repeatedly."""
        pass

    @abstractmethod
    async def entries(self, account_id: str) -> List[LedgerEntry]:
        pass


# =============================================================================
# In-memory implementation
# =============================================================================

class InMemoryCreditLedger(CreditLedger):
    """
    Ledger held in process memory.

    Every mutation runs without suspension points, so on a single event loop
    it is atomic with respect to other coroutines. The in-memory job store
    calls the ``*_now`` helpers inside its own critical sections.
    """

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = dict(balances or {})
        self._entries: List[LedgerEntry] = []
        self._by_job: Dict[Tuple[str, str], LedgerEntry] = {}

    def _append(self, account_id: str, job_id: Optional[str], kind: LedgerEntryKind, amount: int) -> LedgerEntry:
        self._balances[account_id] = self._balances.get(account_id, 0) + amount
        entry = LedgerEntry(
            account_id=account_id,
            job_id=job_id,
            kind=kind.value,
            amount=amount,
            balance_after=self._balances[account_id],
        )
        self._entries.append(entry)
        if job_id is not None:
            self._by_job[(job_id, kind.value)] = entry
        return entry

    def check_funds_now(self, account_id: str, amount: int):
        available = self._balances.get(account_id, 0)
        if available < amount:
            raise InsufficientCreditsError(account_id, required=amount, available=available)

    def debit_now(self, account_id: str, amount: int, job_id: str) -> DebitResult:
        if amount <= 0:
            raise InvalidInputError(f"Debit amount must be positive, got {amount}")
        existing = self._by_job.get((job_id, LedgerEntryKind.DEBIT.value))
        if existing is not None:
            return DebitResult(ok=True, balance_after=self._balances[account_id])
        self.check_funds_now(account_id, amount)
        entry = self._append(account_id, job_id, LedgerEntryKind.DEBIT, -amount)
        return DebitResult(ok=True, balance_after=entry.balance_after)

    def refund_now(self, job_id: str, amount: Optional[int] = None) -> RefundResult:
        debit = self._by_job.get((job_id, LedgerEntryKind.DEBIT.value))
        if debit is None:
            return RefundResult(ok=True, refunded=False)
        if (job_id, LedgerEntryKind.REFUND.value) in self._by_job:
            return RefundResult(ok=True, refunded=False, balance_after=self._balances[debit.account_id])
        entry = self._append(debit.account_id, job_id, LedgerEntryKind.REFUND, amount or -debit.amount)
        logger.info("credits_refunded", job_id=job_id, account_id=debit.account_id, amount=entry.amount)
        return RefundResult(ok=True, refunded=True, balance_after=entry.balance_after)

    async def balance(self, account_id: str) -> int:
        return self._balances.get(account_id, 0)

    async def grant(self, account_id: str, amount: int) -> int:
        return self._append(account_id, None, LedgerEntryKind.GRANT, amount).balance_after

    async def debit(self, account_id: str, amount: int, job_id: str) -> DebitResult:
        return self.debit_now(account_id, amount, job_id)

    async def refund(self, job_id: str, amount: Optional[int] = None) -> RefundResult:
        return self.refund_now(job_id, amount)

    async def entries(self, account_id: str) -> List[LedgerEntry]:
        return [e for e in self._entries if e.account_id == account_id]


# =============================================================================
# SQL implementation
# =============================================================================

class SqlCreditLedger(CreditLedger):
    """
    Ledger on an async SQLAlchemy session factory.

    The ``*_in_session`` helpers take the caller's session so a job store can
    debit inside the same transaction that inserts the job row.
    """

    def __init__(self, session_maker):
        self._session_maker = session_maker

    async def _get_account(self, session: AsyncSession, account_id: str) -> Optional[CreditAccount]:
        result = await session.execute(
            select(CreditAccount).where(CreditAccount.account_id == account_id).with_for_update()
        )
        return result.scalars().first()

    async def _append(
        self,
        session: AsyncSession,
        account: CreditAccount,
        job_id: Optional[str],
        kind: LedgerEntryKind,
        amount: int
    ) -> LedgerEntry:
        account.balance += amount
        account.updated_at = datetime.utcnow()
        entry = LedgerEntry(
            account_id=account.account_id,
            job_id=job_id,
            kind=kind.value,
            amount=amount,
            balance_after=account.balance,
        )
        session.add(account)
        session.add(entry)
        await session.flush()
        return entry

    async def _job_entry(self, session: AsyncSession, job_id: str, kind: LedgerEntryKind) -> Optional[LedgerEntry]:
        result = await session.execute(
            select(LedgerEntry).where(LedgerEntry.job_id == job_id, LedgerEntry.kind == kind.value)
        )
        return result.scalars().first()

    async def debit_in_session(self, session: AsyncSession, account_id: str, amount: int, job_id: str) -> DebitResult:
        if amount <= 0:
            raise InvalidInputError(f"Debit amount must be positive, got {amount}")
        account = await self._get_account(session, account_id)
        available = account.balance if account else 0
        if account is None or available < amount:
            raise InsufficientCreditsError(account_id, required=amount, available=available)
        existing = await self._job_entry(session, job_id, LedgerEntryKind.DEBIT)
        if existing is not None:
            return DebitResult(ok=True, balance_after=account.balance)
        entry = await self._append(session, account, job_id, LedgerEntryKind.DEBIT, -amount)
        return DebitResult(ok=True, balance_after=entry.balance_after)

    async def refund_in_session(self, session: AsyncSession, job_id: str, amount: Optional[int] = None) -> RefundResult:
        debit = await self._job_entry(session, job_id, LedgerEntryKind.DEBIT)
        if debit is None:
            return RefundResult(ok=True, refunded=False)
        if await self._job_entry(session, job_id, LedgerEntryKind.REFUND) is not None:
            return RefundResult(ok=True, refunded=False)
        account = await self._get_account(session, debit.account_id)
        entry = await self._append(session, account, job_id, LedgerEntryKind.REFUND, amount or -debit.amount)
        logger.info("credits_refunded", job_id=job_id, account_id=debit.account_id, amount=entry.amount)
        return RefundResult(ok=True, refunded=True, balance_after=entry.balance_after)

    async def balance(self, account_id: str) -> int:
        async with self._session_maker() as session:
            account = await session.get(CreditAccount, account_id)
            return account.balance if account else 0

    async def grant(self, account_id: str, amount: int) -> int:
        async with self._session_maker() as session:
            async with session.begin():
                account = await self._get_account(session, account_id)
                if account is None:
                    account = CreditAccount(account_id=account_id, balance=0)
                entry = await self._append(session, account, None, LedgerEntryKind.GRANT, amount)
                return entry.balance_after

    async def debit(self, account_id: str, amount: int, job_id: str) -> DebitResult:
        async with self._session_maker() as session:
            async with session.begin():
                return await self.debit_in_session(session, account_id, amount, job_id)

    async def refund(self, job_id: str, amount: Optional[int] = None) -> RefundResult:
        async with self._session_maker() as session:
            async with session.begin():
                return await self.refund_in_session(session, job_id, amount)

    async def entries(self, account_id: str) -> List[LedgerEntry]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(LedgerEntry)
                .where(LedgerEntry.account_id == account_id)
                .order_by(LedgerEntry.created_at)
            )
            return list(result.scalars().all())
