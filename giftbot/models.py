"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text, UniqueConstraint

from giftbot.storage import Base


class InventoryCode(Base):
    """
    One redemption code for one product.

    Table: inventory_codes
    Status moves available -> reserved -> delivered, each step guarded by a
    conditional update so a row is handed out once. order_id is unique, so an
    order never holds two rows.
    """
    __tablename__ = "inventory_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_key = Column(String, nullable=False, index=True)
    code = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="available", index=True)
    order_id = Column(String, nullable=True, unique=True)
    reserved_at = Column(String, nullable=True)  # ISO-8601 UTC
    delivered_at = Column(String, nullable=True)  # ISO-8601 UTC
    created_at = Column(String, nullable=False)


class SaleEventRow(Base):
    """
    Append-only conversation event log keyed by sale id.

    Table: sale_events
    (sale_id, seq) is unique; folding the rows in seq order rebuilds the
    sale's conversation record. (sale_id, dedupe_key) is unique too, so a
    buyer message is claimed by one invocation only.
    """
    __tablename__ = "sale_events"
    __table_args__ = (
        UniqueConstraint("sale_id", "seq", name="uq_sale_events_sale_seq"),
        UniqueConstraint("sale_id", "dedupe_key", name="uq_sale_events_sale_dedupe"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    sale_id = Column(String, nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(Text, nullable=False, default="{}")  # JSON object
    dedupe_key = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
