import json
import logging
from typing import Dict, Generator, Optional, Tuple

from sqlalchemy import create_engine, event, insert, literal_column, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import QueuePool

from app.config import settings
from app.utils import utc_now

logger = logging.getLogger(__name__)

# A single pooled connection serializes all writers; busy_timeout bounds
# the wait for anything else holding the file lock.
engine = create_engine(
    f"sqlite:///{settings.DATABASE_PATH}",
    connect_args={"check_same_thread": False},
    poolclass=QueuePool,
    pool_size=1,
    max_overflow=0,
    pool_timeout=30,
    echo=False,
)


@event.listens_for(engine, "connect")
def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database at: {settings.DATABASE_PATH}")
    try:
        # Import models to register them with Base.metadata
        from app import models  # noqa: F401

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
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            found = db.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' "
                "AND name IN ('conversations', 'messages', 'extracted_data')"
            )).scalar()
            if found != 3:
                logger.error(f"Database schema not applied: found {found} of 3 tables")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def upsert_conversation(db: Session, conversation_id: str) -> None:
    """Create the conversation row if it does not exist. Never resets status."""
    from app.models import Conversation, STATUS_ACTIVE

    now = utc_now()
    stmt = sqlite_insert(Conversation).values(
        id=conversation_id,
        status=STATUS_ACTIVE,
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["id"])
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def get_conversation_status(db: Session, conversation_id: str) -> Optional[str]:
    """
    Look up a conversation's status.

    Returns:
        "ACTIVE" or "PAUSED", or None when the conversation does not exist.
    """
    from app.models import Conversation

    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        logger.debug(f"Conversation not found: {conversation_id}")
        return None
    return conversation.status


def pause_conversation(db: Session, conversation_id: str) -> bool:
    """
    Move a conversation to PAUSED.

    Returns:
        True if a row was updated, False if the conversation does not exist.
    """
    from app.models import Conversation, STATUS_PAUSED

    try:
        updated = (
            db.query(Conversation)
            .filter(Conversation.id == conversation_id)
            .update({"status": STATUS_PAUSED, "updated_at": utc_now()})
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info(f"Paused conversation {conversation_id}: rows={updated}")
    return updated > 0


# =============================================================================
# Message Repository Functions
# =============================================================================

def message_exists(db: Session, message_id: str) -> bool:
    """Check whether a message id has already been stored (idempotency)."""
    from app.models import Message

    found = db.query(Message.id).filter(Message.id == message_id).first()
    return found is not None


def create_message(
    db: Session,
    message_id: str,
    conversation_id: str,
    role: str,
    content: str,
) -> Tuple[bool, bool]:
    """
    Append a message to a conversation's transcript (idempotent).

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Message created successfully
        - (True, True): Message id already stored
        - (False, False): Error occurred
    """
    from app.models import Message

    logger.debug(f"Creating message: id={message_id}, conversation={conversation_id}, role={role}")

    try:
        db.execute(insert(Message).values(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=utc_now(),
        ))
        db.commit()
        logger.info(f"Message created: {message_id}")
        return (True, False)

    except IntegrityError as e:
        db.rollback()
        # Foreign key violations are IntegrityErrors too
        if message_exists(db, message_id):
            logger.info(f"Duplicate message detected: {message_id}")
            return (True, True)
        logger.error(f"Failed to create message {message_id}: {e}")
        return (False, False)

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message {message_id}: {e}")
        return (False, False)


def get_recent_messages(db: Session, conversation_id: str, limit: int = 20) -> list:
    """
    Return the last `limit` messages of a conversation, oldest first.
    """
    from app.models import Message

    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), literal_column("messages.rowid").desc())
        .limit(limit)
        .all()
    )
    rows.reverse()
    logger.debug(f"Loaded {len(rows)} messages for {conversation_id}")
    return rows


# =============================================================================
# Extracted Data Repository Functions
# =============================================================================

def upsert_extracted_data(db: Session, conversation_id: str, data: Dict[str, str]) -> None:
    """Store the latest extracted data for a conversation, replacing any prior value."""
    from app.models import ExtractedData

    now = utc_now()
    dump = json.dumps(data, ensure_ascii=False)
    stmt = sqlite_insert(ExtractedData).values(
        conversation_id=conversation_id,
        json_dump=dump,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["conversation_id"],
        set_={"json_dump": stmt.excluded.json_dump, "updated_at": stmt.excluded.updated_at},
    )
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def get_extracted_data(db: Session, conversation_id: str) -> Optional[Dict[str, str]]:
    """Return the stored extracted data for a conversation, or None."""
    from app.models import ExtractedData

    row = db.get(ExtractedData, conversation_id)
    if row is None or row.json_dump is None:
        return None
    return json.loads(row.json_dump)
