"""
SQLAlchemy ORM Models for the Order Ledger

Defines database models matching the schema in init_db.py.
Orders are never deleted; observations form the append-only audit trail.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, CheckConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class OrderModel(Base):
    """
    ORM model for orders table.

    One row per merchant transaction id; customer fields and the initial
    gateway answer are stored as JSON blobs.
    """
    __tablename__ = "orders"

    transaction_id = Column(String, primary_key=True)
    customer_data = Column(Text, nullable=False)  # JSON blob
    amount = Column(Integer, nullable=False)  # minor units
    display_amount = Column(String)
    status = Column(String, nullable=False, index=True)
    gateway_transaction_id = Column(String)
    last_outcome_code = Column(String)
    initiation_data = Column(Text)  # JSON blob
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('PENDING', 'PAID', 'FAILED')", name="order_status_check"),
        CheckConstraint("amount > 0", name="order_amount_check"),
    )


class OrderObservationModel(Base):
    """
    ORM model for order_observations table.

    Every outcome handed to the ledger, including duplicates and conflicts.
    """
    __tablename__ = "order_observations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String, ForeignKey("orders.transaction_id"), nullable=False, index=True)
    code = Column(String, nullable=False)
    status = Column(String, nullable=False)
    source = Column(String, nullable=False)
    gateway_transaction_id = Column(String)
    observed_at = Column(DateTime, nullable=False)
    disposition = Column(String, nullable=False)

    __table_args__ = (
        CheckConstraint("source IN ('CALLBACK', 'POLL')", name="observation_source_check"),
        CheckConstraint(
            "disposition IN ('APPLIED', 'REFRESHED', 'DUPLICATE', 'CONFLICT')",
            name="observation_disposition_check"
        ),
    )
