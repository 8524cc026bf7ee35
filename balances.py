import logging
from typing import Iterable, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import Account, Transaction, TransactionSnapshot, TransactionType

logger = logging.getLogger(__name__)


def balance_effects(snapshot: TransactionSnapshot) -> list[tuple[str, int]]:
    if snapshot.type == TransactionType.income:
        return [(snapshot.account_id, snapshot.amount_cents)]
    if snapshot.type == TransactionType.expense:
        return [(snapshot.account_id, -snapshot.amount_cents)]
    # transfer without a destination is a data error caught upstream
    if not snapshot.destination_account_id:
        return []
    return [
        (snapshot.account_id, -snapshot.amount_cents),
        (snapshot.destination_account_id, snapshot.amount_cents),
    ]


class AccountBalanceMaintainer:
    """Applies and reverses the balance effect of one transaction.

    Runs inside the caller's unit of work and never commits. Pending
    transactions carry no balance effect and are refused.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def apply(self, snapshot: TransactionSnapshot) -> None:
        self._guard(snapshot)
        for account_id, delta in balance_effects(snapshot):
            self._adjust(account_id, delta)

    def reverse(self, snapshot: TransactionSnapshot) -> None:
        self._guard(snapshot)
        for account_id, delta in balance_effects(snapshot):
            self._adjust(account_id, -delta)

    def rebase(self, account_id: str, initial_balance_cents: int) -> int:
        """Change an account's opening balance, shifting the current one alike."""
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        delta = initial_balance_cents - int(account.initial_balance_cents)
        account.initial_balance_cents = initial_balance_cents
        self.session.flush()
        if delta:
            self._adjust(account_id, delta)
        return delta

    @staticmethod
    def _guard(snapshot: TransactionSnapshot) -> None:
        if snapshot.is_pending:
            raise ValidationError("Pending transactions have no balance effect")

    def _adjust(self, account_id: str, delta: int) -> None:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(current_balance_cents=Account.current_balance_cents + delta)
        )
        if result.rowcount == 0:
            raise NotFoundError("Account not found")

    def expected_balance(self, account_id: str) -> int:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")

        signed = case(
            (
                (Transaction.type == TransactionType.income)
                & (Transaction.account_id == account_id),
                Transaction.amount_cents,
            ),
            (
                (Transaction.type == TransactionType.expense)
                & (Transaction.account_id == account_id),
                -Transaction.amount_cents,
            ),
            (
                (Transaction.type == TransactionType.transfer)
                & (Transaction.account_id == account_id)
                & Transaction.destination_account_id.isnot(None),
                -Transaction.amount_cents,
            ),
            else_=0,
        )
        incoming = case(
            (
                (Transaction.type == TransactionType.transfer)
                & (Transaction.destination_account_id == account_id),
                Transaction.amount_cents,
            ),
            else_=0,
        )
        total = self.session.execute(
            select(func.coalesce(func.sum(signed + incoming), 0)).where(
                Transaction.is_pending.is_(False),
                or_(
                    Transaction.account_id == account_id,
                    Transaction.destination_account_id == account_id,
                ),
            )
        ).scalar_one()
        return int(account.initial_balance_cents) + int(total or 0)

    def rebuild(self, account_ids: Optional[Iterable[str]] = None) -> list[str]:
        """Rewrite stored balances from the journal; returns the ids that drifted."""
        stmt = select(Account.id).order_by(Account.id)
        if account_ids is not None:
            stmt = stmt.where(Account.id.in_(list(account_ids)))
        drifted: list[str] = []
        for account_id in self.session.scalars(stmt).all():
            expected = self.expected_balance(account_id)
            account = self.session.get(Account, account_id)
            if account.current_balance_cents != expected:
                logger.warning(
                    f"balance_rebuild: account={account_id} "
                    f"stored={account.current_balance_cents} expected={expected}"
                )
                account.current_balance_cents = expected
                drifted.append(account_id)
        self.session.flush()
        return drifted
