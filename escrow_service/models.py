from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Enum
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum


def utcnow() -> datetime:
    """Naive UTC now, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


Base = declarative_base()

class PaymentStatus(enum.Enum):
    OPEN = "OPEN"
    CONFIRMED = "CONFIRMED"
    REFUNDED = "REFUNDED"

class EventType(enum.Enum):
    PAYMENT_CREATED = "PaymentCreated"
    PAYMENT_CONFIRMED = "PaymentConfirmed"
    PAYMENT_REFUNDED = "PaymentRefunded"

class Payment(Base):
    __tablename__ = "escrow_payments"

    order_id = Column(String(66), primary_key=True, index=True) # one record per order, never deleted
    payer = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.OPEN, nullable=False)
    created_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

class Account(Base):
    __tablename__ = "escrow_accounts"

    identity = Column(String, primary_key=True, index=True)
    balance = Column(BigInteger, nullable=False, default=0)

class LedgerEvent(Base):
    __tablename__ = "escrow_events"

    # block is the commit order of the ledger
    block = Column(Integer, primary_key=True, autoincrement=True)
    tx_ref = Column(String(66), unique=True, index=True, nullable=False)
    event_type = Column(Enum(EventType), index=True, nullable=False)
    order_id = Column(String(66), index=True, nullable=False)
    payer = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)
    actor = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
