"""Database setup for the sticker chart store."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str) -> Engine:
    """Create an engine for ``url`` with SQLite foreign keys switched on.

    In-memory databases share a single connection so that every session
    opened against the engine sees the same data.
    """
    kwargs = {"future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_foreign_keys)
    return engine


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()


class EventType(Base):
    """An achievement type users can mark dates with."""

    __tablename__ = "event_types"
    __table_args__ = (
        CheckConstraint("weight >= 1", name="ck_event_types_weight"),
        CheckConstraint("availability >= 0", name="ck_event_types_availability"),
    )

    name = Column(String, primary_key=True)
    icon = Column(String, nullable=False)
    icon_color = Column("iconColor", String, nullable=False)
    # 0 means unlimited, otherwise the maximum number of events per day
    availability = Column(Integer, nullable=False, default=0)
    owner = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    weight = Column(Integer, nullable=False, default=1)


class Event(Base):
    """A single sticker: an event type marked on a calendar date."""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(String, nullable=False, index=True)
    marked_at = Column("markedAt", String, nullable=False)
    event_type = Column("eventType", String, ForeignKey("event_types.name"), nullable=False, index=True)
    note = Column(String, nullable=True)
    photo_path = Column("photoPath", String, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(String, nullable=True)
    verified_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class DbVersion(Base):
    """Single-row schema version marker."""

    __tablename__ = "db_version"

    version = Column(Integer, primary_key=True, autoincrement=False)


def init_db(bind=None) -> None:
    """Create database tables if they do not exist."""
    from .models import user  # noqa: F401  registers roles and users

    Base.metadata.create_all(bind=bind or engine)
