import json
import logging
from datetime import datetime, timezone
from typing import Generator, Iterable, Optional

from sqlalchemy import create_engine, func, inspect, or_, text, update
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from giftbot.config import settings

logger = logging.getLogger(__name__)

_connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # FastAPI and the inventory worker threads share connections
    _connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

REQUIRED_TABLES = ("inventory_codes", "sale_events")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from giftbot.models import InventoryCode, SaleEventRow  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and all tables exist, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in REQUIRED_TABLES:
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Inventory Repository Functions
# =============================================================================

def add_codes(db: Session, product_key: str, codes: Iterable[str]) -> tuple[int, int]:
    """
    Load redemption codes for a product.

    Returns:
        Tuple of (added, skipped_duplicates)
    """
    from giftbot.models import InventoryCode

    added = 0
    skipped = 0
    for raw in codes:
        code = raw.strip()
        if not code:
            continue
        db.add(InventoryCode(
            product_key=product_key,
            code=code,
            status="available",
            created_at=utc_now_iso(),
        ))
        try:
            db.commit()
            added += 1
        except IntegrityError:
            db.rollback()
            skipped += 1
            logger.info(f"Duplicate inventory code skipped for {product_key}")

    logger.info(f"Loaded codes for {product_key}: added={added}, skipped={skipped}")
    return added, skipped


def draw_available_code(db: Session, product_key: str, order_id: Optional[str] = None):
    """
    Atomically claim one available code for a product.

    The claim is a conditional update on status='available'; when another
    caller wins the same row the loop moves on to the next one. An order
    holds at most one row: if order_id already has a reserved or delivered
    row (or another caller tags one first), that row is returned and nothing
    new is claimed. Returns the row or None when the product has no stock.
    """
    from giftbot.models import InventoryCode

    while True:
        if order_id is not None:
            existing = find_code_for_order(db, order_id)
            if existing is not None:
                logger.info(f"Order {order_id} already holds inventory row {existing.id}")
                return existing

        candidate = (
            db.query(InventoryCode.id)
            .filter(InventoryCode.product_key == product_key)
            .filter(InventoryCode.status == "available")
            .order_by(InventoryCode.id.asc())
            .first()
        )
        if candidate is None:
            logger.info(f"No available codes for {product_key}")
            return None

        try:
            result = db.execute(
                update(InventoryCode)
                .where(InventoryCode.id == candidate.id)
                .where(InventoryCode.status == "available")
                .values(status="reserved", order_id=order_id, reserved_at=utc_now_iso())
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(f"Order {order_id} was tagged by another caller, reusing its row")
            continue

        if result.rowcount == 1:
            row = db.get(InventoryCode, candidate.id)
            logger.info(f"Claimed inventory row {row.id} for {product_key}")
            return row

        logger.debug(f"Lost race for inventory row {candidate.id}, retrying")


def mark_code_delivered(db: Session, row_id: int, order_id: str) -> bool:
    """
    Move a claimed row to 'delivered' for an order.

    Returns:
        True when the row is delivered for this order (including a repeat
        call), False when the row is missing or belongs to another order.
    """
    from giftbot.models import InventoryCode

    result = db.execute(
        update(InventoryCode)
        .where(InventoryCode.id == row_id)
        .where(InventoryCode.status == "reserved")
        .where(or_(InventoryCode.order_id.is_(None), InventoryCode.order_id == order_id))
        .values(status="delivered", order_id=order_id, delivered_at=utc_now_iso())
    )
    db.commit()
    if result.rowcount == 1:
        return True

    row = db.get(InventoryCode, row_id)
    return row is not None and row.status == "delivered" and row.order_id == order_id


def find_code_for_order(db: Session, order_id: str):
    """Return the reserved or delivered row tagged with an order, if any."""
    from giftbot.models import InventoryCode

    return (
        db.query(InventoryCode)
        .filter(InventoryCode.order_id == order_id)
        .filter(InventoryCode.status.in_(("reserved", "delivered")))
        .order_by(InventoryCode.id.asc())
        .first()
    )


def get_inventory_counts(db: Session) -> dict:
    """
    Count codes per product and status.

    Returns:
        {product_key: {"available": n, "reserved": n, "delivered": n}}
    """
    from giftbot.models import InventoryCode

    rows = (
        db.query(
            InventoryCode.product_key,
            InventoryCode.status,
            func.count(InventoryCode.id).label("count"),
        )
        .group_by(InventoryCode.product_key, InventoryCode.status)
        .all()
    )
    counts: dict = {}
    for row in rows:
        bucket = counts.setdefault(row.product_key, {"available": 0, "reserved": 0, "delivered": 0})
        bucket[row.status] = row.count
    return counts


# =============================================================================
# Sale Event Repository Functions
# =============================================================================

def append_sale_event(
    db: Session,
    sale_id: str,
    event_type: str,
    payload: dict,
    created_at: str,
    dedupe_key: Optional[str] = None,
):
    """
    Append one event to a sale's log.

    seq is assigned as max(seq)+1; a concurrent writer taking the same seq
    hits the unique constraint and this call retries with the next value.
    With a dedupe_key the append happens at most once per sale and key.

    Returns:
        The stored row, or None when dedupe_key was already taken
    """
    from giftbot.models import SaleEventRow

    while True:
        last_seq = (
            db.query(func.max(SaleEventRow.seq))
            .filter(SaleEventRow.sale_id == sale_id)
            .scalar()
        )
        row = SaleEventRow(
            sale_id=sale_id,
            seq=(last_seq or 0) + 1,
            event_type=event_type,
            payload=json.dumps(payload),
            dedupe_key=dedupe_key,
            created_at=created_at,
        )
        db.add(row)
        try:
            db.commit()
            return row
        except IntegrityError:
            db.rollback()
            if dedupe_key is not None and has_sale_event_key(db, sale_id, dedupe_key):
                logger.info(f"Event {dedupe_key} already stored for sale {sale_id}")
                return None
            logger.debug(f"Concurrent append on sale {sale_id}, retrying")


def has_sale_event_key(db: Session, sale_id: str, dedupe_key: str) -> bool:
    from giftbot.models import SaleEventRow

    return (
        db.query(SaleEventRow.id)
        .filter(SaleEventRow.sale_id == sale_id)
        .filter(SaleEventRow.dedupe_key == dedupe_key)
        .first()
    ) is not None


def get_sale_events(db: Session, sale_id: str) -> list:
    from giftbot.models import SaleEventRow

    return (
        db.query(SaleEventRow)
        .filter(SaleEventRow.sale_id == sale_id)
        .order_by(SaleEventRow.seq.asc())
        .all()
    )


def list_sale_ids(db: Session, limit: int = 100) -> list[str]:
    """Sale ids ordered by most recent activity first."""
    from giftbot.models import SaleEventRow

    rows = (
        db.query(SaleEventRow.sale_id, func.max(SaleEventRow.id).label("last_id"))
        .group_by(SaleEventRow.sale_id)
        .order_by(func.max(SaleEventRow.id).desc())
        .limit(limit)
        .all()
    )
    return [row.sale_id for row in rows]
