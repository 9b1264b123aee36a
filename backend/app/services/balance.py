"""
Balance ledger: prepaid deposit balance per merchant and currency.

Every movement writes a BalanceTransaction with before/after values.
Callers own the transaction: a debit commits together with the order it
charges, a credit together with the payment request it settles.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import BalanceTransactionType, ZERO, ONE_CENT
from backend.app.core.exceptions import ConflictError, ValidationError, NotFoundError
from backend.app.core.logging import get_logger
from backend.app.core.timeutils import utcnow
from backend.app.models.balance import MerchantBalance, BalanceTransaction
from backend.app.models.merchant import Merchant

logger = get_logger(__name__)


class InsufficientBalanceError(ConflictError):
    def __init__(self, merchant_id: int, amount: Decimal, currency: str):
        super().__init__(
            f"Merchant {merchant_id} balance is below {amount} {currency}",
            code="INSUFFICIENT_BALANCE",
        )


def to_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(ONE_CENT, rounding=ROUND_HALF_UP)


class BalanceService:
    """Debit/credit operations on merchant deposit balances."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_merchant_for_update(self, merchant_id: int) -> Merchant:
        """Row-lock the merchant so concurrent first credits cannot both insert a balance row."""
        result = await self.session.execute(
            select(Merchant).where(Merchant.id == merchant_id).with_for_update()
        )
        merchant = result.scalar_one_or_none()
        if merchant is None:
            raise NotFoundError("Merchant", merchant_id)
        return merchant

    async def get_balance_row(
        self, merchant_id: int, currency: str, for_update: bool = False,
    ) -> Optional[MerchantBalance]:
        query = (
            select(MerchantBalance)
            .where(
                MerchantBalance.merchant_id == merchant_id,
                MerchantBalance.currency == currency,
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_balance(self, merchant_id: int, currency: str, for_update: bool = False) -> Decimal:
        """
        Current balance, zero when the merchant has no row yet.

        With for_update the merchant row and the balance row stay locked
        until the caller commits: credits (merchant lock) and debits (guarded
        UPDATE on the balance row) wait, so the value cannot go stale while
        the caller acts on it.
        """
        if for_update:
            await self._get_merchant_for_update(merchant_id)
        row = await self.get_balance_row(merchant_id, currency, for_update=for_update)
        return Decimal(row.balance) if row else ZERO

    async def _record(
        self,
        merchant_id: int,
        currency: str,
        tx_type: str,
        amount: Decimal,
        balance_after: Decimal,
        description: Optional[str],
        payment_request_id: Optional[int] = None,
        order_id: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> BalanceTransaction:
        tx = BalanceTransaction(
            merchant_id=merchant_id,
            currency=currency,
            type=tx_type,
            amount=amount,
            balance_before=balance_after - amount,
            balance_after=balance_after,
            description=description,
            payment_request_id=payment_request_id,
            order_id=order_id,
            created_by=created_by,
            created_at=utcnow(),
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def credit(
        self,
        merchant_id: int,
        amount,
        currency: str,
        *,
        description: Optional[str] = None,
        payment_request_id: Optional[int] = None,
        tx_type: str = BalanceTransactionType.TOPUP.value,
        created_by: Optional[str] = None,
    ) -> BalanceTransaction:
        """
        Unconditional credit. Creates the balance row on first use.

        Args:
            merchant_id: Merchant whose deposit is credited
            amount: Positive amount, rounded to cents
            currency: Balance currency
            tx_type: TOPUP also stamps last_topup_at; ADJUSTMENT does not

        Returns:
            The ledger row with balance_before and balance_after
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Credit amount must be positive", code="INVALID_AMOUNT")

        await self._get_merchant_for_update(merchant_id)
        row = await self.get_balance_row(merchant_id, currency)
        if row is None:
            row = MerchantBalance(merchant_id=merchant_id, currency=currency, balance=ZERO, updated_at=utcnow())
            self.session.add(row)
            await self.session.flush()

        now = utcnow()
        values = {"balance": MerchantBalance.balance + amount, "updated_at": now}
        if tx_type == BalanceTransactionType.TOPUP.value:
            values["last_topup_at"] = now
        await self.session.execute(
            update(MerchantBalance)
            .where(MerchantBalance.id == row.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        row = await self.get_balance_row(merchant_id, currency)
        tx = await self._record(
            merchant_id, currency, tx_type, amount, to_money(row.balance),
            description, payment_request_id=payment_request_id, created_by=created_by,
        )
        logger.info("Balance credited", merchant_id=merchant_id, amount=str(amount), currency=currency, balance=str(row.balance))
        return tx

    async def debit(
        self,
        merchant_id: int,
        amount,
        currency: str,
        *,
        description: Optional[str] = None,
        order_id: Optional[int] = None,
        tx_type: str = BalanceTransactionType.ORDER_FEE.value,
        created_by: Optional[str] = None,
    ) -> BalanceTransaction:
        """
        Debit guarded in the UPDATE itself: the row changes only if it stays >= 0.

        Args:
            merchant_id: Merchant whose deposit is charged
            amount: Positive amount, rounded to cents
            currency: Balance currency
            order_id: Order the fee belongs to, if any

        Returns:
            The ledger row with a negative amount

        Raises:
            InsufficientBalanceError: balance below amount or no balance row
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Debit amount must be positive", code="INVALID_AMOUNT")

        result = await self.session.execute(
            update(MerchantBalance)
            .where(
                MerchantBalance.merchant_id == merchant_id,
                MerchantBalance.currency == currency,
                MerchantBalance.balance >= amount,
            )
            .values(balance=MerchantBalance.balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientBalanceError(merchant_id, amount, currency)

        row = await self.get_balance_row(merchant_id, currency)
        tx = await self._record(
            merchant_id, currency, tx_type, -amount, to_money(row.balance),
            description, order_id=order_id, created_by=created_by,
        )
        logger.info("Balance debited", merchant_id=merchant_id, amount=str(amount), currency=currency, balance=str(row.balance))
        return tx

    async def adjust(
        self,
        merchant_id: int,
        amount,
        currency: str,
        description: str,
        created_by: str = "admin",
    ) -> BalanceTransaction:
        """Super-admin correction; a negative adjustment can never overdraw."""
        amount = to_money(amount)
        if amount == ZERO:
            raise ValidationError("Adjustment amount must be non-zero", code="INVALID_AMOUNT")
        if amount > ZERO:
            return await self.credit(
                merchant_id, amount, currency,
                description=description,
                tx_type=BalanceTransactionType.ADJUSTMENT.value,
                created_by=created_by,
            )
        return await self.debit(
            merchant_id, -amount, currency,
            description=description,
            tx_type=BalanceTransactionType.ADJUSTMENT.value,
            created_by=created_by,
        )

    async def list_transactions(self, merchant_id: int, limit: int = 20) -> List[BalanceTransaction]:
        result = await self.session.execute(
            select(BalanceTransaction)
            .where(BalanceTransaction.merchant_id == merchant_id)
            .order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
