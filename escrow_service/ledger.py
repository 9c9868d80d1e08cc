"""
Escrow ledger.

One record per order, three-state lifecycle (OPEN -> CONFIRMED | REFUNDED).
Every mutation runs in a single database transaction and commits a
LedgerEvent, whose autoincrement ``block`` is the ledger's commit order.
Terminal transitions are status-guarded UPDATEs: when two callers race for
the same record, the one ordered second by the database matches zero rows
and gets AlreadyCompleted.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

from escrow_service.errors import (
    AlreadyCompleted,
    DuplicateOrder,
    InsufficientFunds,
    InvalidAmount,
    NotExpired,
    NotFound,
    Unauthorized,
)
from escrow_service.models import Account, EventType, LedgerEvent, Payment, PaymentStatus, utcnow

logger = logging.getLogger("escrow.ledger")


@dataclass(frozen=True)
class PaymentRecord:
    order_id: str
    payer: str
    amount: int
    created_at: Optional[datetime]
    status: PaymentStatus

    @property
    def exists(self) -> bool:
        return self.amount > 0

    @classmethod
    def empty(cls, order_id: str) -> "PaymentRecord":
        return cls(order_id=order_id, payer="", amount=0, created_at=None, status=PaymentStatus.OPEN)

    @classmethod
    def from_model(cls, payment: Payment) -> "PaymentRecord":
        return cls(
            order_id=payment.order_id,
            payer=payment.payer,
            amount=payment.amount,
            created_at=payment.created_at,
            status=payment.status,
        )


@dataclass(frozen=True)
class Receipt:
    """A committed ledger event; ``tx_ref`` is the settlement reference."""
    tx_ref: str
    block: int
    event_type: EventType
    order_id: str
    payer: str
    amount: int
    actor: str
    created_at: datetime

    @classmethod
    def from_model(cls, event: LedgerEvent) -> "Receipt":
        return cls(
            tx_ref=event.tx_ref,
            block=event.block,
            event_type=event.event_type,
            order_id=event.order_id,
            payer=event.payer,
            amount=event.amount,
            actor=event.actor,
            created_at=event.created_at,
        )


class EscrowLedger:

    def __init__(
        self,
        session_factory,
        merchant: str,
        timeout_seconds: int,
        confirmers: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.merchant = merchant
        self.timeout = timedelta(seconds=timeout_seconds)
        self.confirmers = frozenset(confirmers)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def expires_at(self, record: PaymentRecord) -> Optional[datetime]:
        if not record.exists:
            return None
        return record.created_at + self.timeout

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(self, order_id: str, payer: str, amount: int) -> Receipt:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(order_id)

        now = self.now()
        async with self._session_factory() as session:
            try:
                if await session.get(Payment, order_id) is not None:
                    raise DuplicateOrder(order_id)

                debited = await session.execute(
                    update(Account)
                    .where(Account.identity == payer, Account.balance >= amount)
                    .values(balance=Account.balance - amount)
                    .execution_options(synchronize_session=False)
                )
                if debited.rowcount != 1:
                    raise InsufficientFunds(order_id)

                session.add(Payment(
                    order_id=order_id,
                    payer=payer,
                    amount=amount,
                    status=PaymentStatus.OPEN,
                    created_at=now,
                ))
                event = self._append(session, EventType.PAYMENT_CREATED, order_id, payer, amount, payer, now)
                await session.flush()
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateOrder(order_id)

        logger.info(f"Payment created: order={order_id} payer={payer} amount={amount} block={event.block}")
        return Receipt.from_model(event)

    async def confirm(self, order_id: str, caller: str) -> Receipt:
        if caller not in self.confirmers:
            logger.warning(f"Rejected confirm from unauthorized caller {caller} for order {order_id}")
            raise Unauthorized(order_id)
        return await self._settle(order_id, PaymentStatus.CONFIRMED, caller)

    async def refund(self, order_id: str, caller: str) -> Receipt:
        return await self._settle(order_id, PaymentStatus.REFUNDED, caller)

    async def _settle(self, order_id: str, target: PaymentStatus, caller: str) -> Receipt:
        now = self.now()
        async with self._session_factory() as session:
            payment = await session.get(Payment, order_id)
            if payment is None or not payment.amount:
                raise NotFound(order_id)
            if payment.status != PaymentStatus.OPEN:
                raise AlreadyCompleted(order_id)
            if target == PaymentStatus.REFUNDED and now < payment.created_at + self.timeout:
                raise NotExpired(order_id)

            payer, amount = payment.payer, payment.amount
            transitioned = await session.execute(
                update(Payment)
                .where(Payment.order_id == order_id, Payment.status == PaymentStatus.OPEN)
                .values(status=target, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            if transitioned.rowcount != 1:
                await session.rollback()
                raise AlreadyCompleted(order_id)

            if target == PaymentStatus.CONFIRMED:
                beneficiary, event_type = self.merchant, EventType.PAYMENT_CONFIRMED
            else:
                beneficiary, event_type = payer, EventType.PAYMENT_REFUNDED
            await self._credit(session, beneficiary, amount)
            event = self._append(session, event_type, order_id, payer, amount, caller, now)
            await session.flush()
            await session.commit()

        logger.info(
            f"Payment {target.value.lower()}: order={order_id} amount={amount} "
            f"to={beneficiary} by={caller} block={event.block}"
        )
        return Receipt.from_model(event)

    async def credit(self, identity: str, amount: int) -> int:
        """Fund an account. Returns the new balance."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount()
        async with self._session_factory() as session:
            await self._credit(session, identity, amount)
            await session.commit()
        return await self.balance(identity)

    async def _credit(self, session, identity: str, amount: int):
        result = await session.execute(
            update(Account)
            .where(Account.identity == identity)
            .values(balance=Account.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.add(Account(identity=identity, balance=amount))

    def _append(self, session, event_type, order_id, payer, amount, actor, now) -> LedgerEvent:
        event = LedgerEvent(
            tx_ref="0x" + secrets.token_hex(32),
            event_type=event_type,
            order_id=order_id,
            payer=payer,
            amount=amount,
            actor=actor,
            created_at=now,
        )
        session.add(event)
        return event

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, order_id: str) -> PaymentRecord:
        async with self._session_factory() as session:
            payment = await session.get(Payment, order_id)
            if payment is None:
                return PaymentRecord.empty(order_id)
            return PaymentRecord.from_model(payment)

    def record_expired(self, record: PaymentRecord, now: Optional[datetime] = None) -> bool:
        if not record.exists or record.status != PaymentStatus.OPEN:
            return False
        return (now or self.now()) >= record.created_at + self.timeout

    async def is_expired(self, order_id: str) -> bool:
        return self.record_expired(await self.get(order_id))

    async def balance(self, identity: str) -> int:
        async with self._session_factory() as session:
            account = await session.get(Account, identity)
            return account.balance if account else 0

    async def transaction(self, tx_ref: str) -> Optional[Receipt]:
        async with self._session_factory() as session:
            result = await session.execute(select(LedgerEvent).where(LedgerEvent.tx_ref == tx_ref))
            event = result.scalar_one_or_none()
            return Receipt.from_model(event) if event else None

    async def head(self) -> int:
        async with self._session_factory() as session:
            return await session.scalar(select(func.max(LedgerEvent.block))) or 0

    async def events(
        self,
        event_type: Optional[EventType] = EventType.PAYMENT_CREATED,
        from_block: Optional[int] = None,
        lookback: Optional[int] = None,
    ) -> Tuple[int, List[Receipt]]:
        """
        Committed events up to the current head.

        ``lookback`` limits the scan to the last N blocks; ``from_block`` gives
        an explicit lower bound. When both are set the narrower one wins.
        """
        async with self._session_factory() as session:
            head = await session.scalar(select(func.max(LedgerEvent.block))) or 0
            lower = 1
            if lookback is not None:
                lower = max(lower, head - lookback + 1)
            if from_block is not None:
                lower = max(lower, from_block)

            stmt = (
                select(LedgerEvent)
                .where(LedgerEvent.block >= lower, LedgerEvent.block <= head)
                .order_by(LedgerEvent.block)
            )
            if event_type is not None:
                stmt = stmt.where(LedgerEvent.event_type == event_type)
            result = await session.execute(stmt)
            return head, [Receipt.from_model(e) for e in result.scalars().all()]
