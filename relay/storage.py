import logging
from contextlib import contextmanager
from typing import Callable, Generator, Iterator, List, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, select, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from relay.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    """SQLite needs check_same_thread=False to be shared with FastAPI's threadpool."""
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
        # One shared connection, otherwise every session sees an empty database
        options["poolclass"] = StaticPool
    return options


engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_options(settings.DATABASE_URL),
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from relay import models  # noqa: F401

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


@contextmanager
def session_scope(factory: Optional[Callable[[], Session]] = None) -> Iterator[Session]:
    """Unit of work: commit on success, roll back and re-raise on error."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the messages table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("messages"):
            logger.error("Database schema not applied: 'messages' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def get_conversation_messages(
    db: Session,
    contact_id: int,
    page: int = 1,
    limit: int = 20,
) -> Optional[Tuple[List, int]]:
    """
    One page of a conversation, oldest first within the page.

    Page 1 holds the most recent messages. Types outside the tenant's
    permission list are excluded from both the page and the total.

    Returns:
        (messages, total), or None when the contact does not exist
    """
    from relay.models import Contact, Message

    contact = db.get(Contact, contact_id)
    if contact is None:
        return None

    query = select(Message).where(Message.contact_id == contact_id)
    allowed = contact.user.allowed_message_types
    if allowed:
        query = query.where(Message.message_type.in_(allowed))

    total = db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    page_rows = db.execute(
        query.order_by(Message.id.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return list(reversed(page_rows)), total


def get_contacts_with_activity(db: Session, user_id: int) -> Optional[List[Tuple]]:
    """
    A tenant's contacts, most recently active first.

    Each item is (contact, received_count, latest_message). ``received_count``
    counts inbound messages still in status ``received``. Contacts without
    messages come last.

    Returns:
        list of tuples, or None when the user does not exist
    """
    from relay.models import Contact, Message, MessageStatusValue, User

    if db.get(User, user_id) is None:
        return None

    received = (
        select(Message.contact_id, func.count(Message.id).label("received_count"))
        .where(Message.status == MessageStatusValue.RECEIVED.value)
        .group_by(Message.contact_id)
        .subquery()
    )
    rows = db.execute(
        select(Contact, func.coalesce(received.c.received_count, 0))
        .outerjoin(received, received.c.contact_id == Contact.id)
        .where(Contact.user_id == user_id)
    ).all()

    items = [(contact, count, contact.latest_message) for contact, count in rows]
    items.sort(key=_activity_key, reverse=True)
    return items


def _activity_key(item: Tuple) -> Tuple:
    """Newest latest message first; contacts without messages sort last."""
    latest = item[2]
    if latest is None:
        return (0,)
    return (1, latest.created_at, latest.id)
