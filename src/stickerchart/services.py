"""Service layer for users, event types and events.

Every function opens its own session, commits or rolls back, and closes the
session before returning.
"""

import hmac
import logging
import re
from datetime import date as date_type
from datetime import datetime, timezone
from typing import List, Optional

from prometheus_client import Counter
from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from .config import settings
from .database import DbVersion, Event, EventType, SessionLocal, init_db
from .errors import (
    AvailabilityExceededError,
    DuplicateNameError,
    EventTypeInUseError,
    HasOwnedEventTypesError,
    InvalidCodeError,
    InvalidDateError,
    InvalidEventTypeError,
    NotFoundError,
    ProtectedUserError,
    StickerChartError,
    StorageError,
    StorageInitError,
    UnknownEventTypeError,
)
from .models.user import Role, User
from .schemas import (
    ArchivePayload,
    DbVersionRecord,
    EventDetails,
    EventRecord,
    EventTypeRecord,
    EventTypeWithOwner,
    RoleRecord,
    UserRecord,
)


logger = logging.getLogger(__name__)

ADMIN_ROLE_ID = 1
GUEST_ROLE_ID = 2
USER_ROLE_ID = 3
DEFAULT_ROLES = ((ADMIN_ROLE_ID, "Admin"), (GUEST_ROLE_ID, "Guest"), (USER_ROLE_ID, "User"))

ADMIN_NAME = "Admin"
GUEST_NAME = "Guest"
PROTECTED_USERS = frozenset({ADMIN_NAME, GUEST_NAME})

_CODE_RE = re.compile(r"[0-9]{4}")
_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
_UNSET = object()

# Prometheus counters for key store events
USER_COUNTER = Counter("stickerchart_users_created_total", "Total users created")
EVENT_TYPE_COUNTER = Counter(
    "stickerchart_event_types_created_total", "Total event types created"
)
EVENT_COUNTER = Counter("stickerchart_events_marked_total", "Total events marked")
VERIFY_COUNTER = Counter("stickerchart_events_verified_total", "Total events verified")


def now_iso() -> str:
    """Current UTC time in the ``2024-01-01T00:00:00.000Z`` form."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _handle_service_error(session: Session, exc: Exception, action: str) -> None:
    """Rollback the transaction and raise a store error for ``action``."""
    session.rollback()
    if isinstance(exc, StickerChartError):
        logger.warning("%s rejected: %s", action, exc)
        raise exc
    logger.exception("%s failed", action, exc_info=exc)
    if isinstance(exc, SQLAlchemyError):
        raise StorageError(f"{action} failed: database error ({exc.__class__.__name__})") from exc
    raise StorageError(f"{action} failed: {exc}") from exc


def validate_code(code: str) -> str:
    """Return ``code`` if it is exactly four digits, else raise ``InvalidCodeError``."""
    if not isinstance(code, str) or not _CODE_RE.fullmatch(code):
        raise InvalidCodeError("Code must be a 4-digit number")
    return code


def _validate_date(value: str) -> str:
    if not isinstance(value, str) or not _DATE_RE.fullmatch(value):
        raise InvalidDateError(f"invalid date {value!r}, expected YYYY-MM-DD")
    try:
        date_type.fromisoformat(value)
    except ValueError as exc:
        raise InvalidDateError(f"invalid date {value!r}") from exc
    return value


def _get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"user {user_id} not found")
    return user


def _get_event(session: Session, event_id: int) -> Event:
    event = session.get(Event, event_id)
    if event is None:
        raise NotFoundError(f"event {event_id} not found")
    return event


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def initialize() -> None:
    """Create tables and seed roles, the Admin and Guest users and the version row.

    Safe to call repeatedly: rows that already exist are left untouched.
    """
    session: Session = SessionLocal()
    try:
        init_db(session.get_bind())

        existing_roles = {r.role_name for r in session.query(Role).all()}
        for role_id, role_name in DEFAULT_ROLES:
            if role_name not in existing_roles:
                session.add(Role(role_id=role_id, role_name=role_name))
        session.flush()

        now = now_iso()
        for name, role_name in ((ADMIN_NAME, "Admin"), (GUEST_NAME, "Guest")):
            if session.query(User).filter(User.name == name).first() is None:
                role = session.query(Role).filter(Role.role_name == role_name).one()
                session.add(
                    User(
                        name=name,
                        role_id=role.role_id,
                        code=settings.default_code,
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                        icon=None,
                    )
                )

        versions = session.query(DbVersion).all()
        if len(versions) != 1:
            session.execute(delete(DbVersion))
            session.add(DbVersion(version=settings.schema_version))
        elif versions[0].version < settings.schema_version:
            versions[0].version = settings.schema_version

        session.commit()
        logger.info("database initialized")
    except Exception as exc:
        session.rollback()
        logger.exception("database initialization failed")
        raise StorageInitError(f"failed to initialize database: {exc}") from exc
    finally:
        session.close()


def get_roles() -> List[RoleRecord]:
    session: Session = SessionLocal()
    try:
        rows = session.query(Role).order_by(Role.role_id).all()
        return [RoleRecord.model_validate(r) for r in rows]
    except Exception as exc:
        _handle_service_error(session, exc, "get roles")
    finally:
        session.close()


def get_db_version() -> DbVersionRecord:
    """Return the schema version row, or version ``0`` when none is stored."""
    session: Session = SessionLocal()
    try:
        row = session.query(DbVersion).first()
        return DbVersionRecord(version=row.version if row else 0)
    except Exception as exc:
        _handle_service_error(session, exc, "get db version")
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def get_users() -> List[UserRecord]:
    """Return all users in primary key order."""
    session: Session = SessionLocal()
    try:
        rows = session.query(User).order_by(User.id).all()
        return [UserRecord.model_validate(u) for u in rows]
    except Exception as exc:
        _handle_service_error(session, exc, "get users")
    finally:
        session.close()


def get_user_by_name(name: str) -> Optional[UserRecord]:
    session: Session = SessionLocal()
    try:
        user = session.query(User).filter(User.name == name).first()
        return UserRecord.model_validate(user) if user else None
    except Exception as exc:
        _handle_service_error(session, exc, "get user by name")
    finally:
        session.close()


def get_user_by_id(user_id: int) -> Optional[UserRecord]:
    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        return UserRecord.model_validate(user) if user else None
    except Exception as exc:
        _handle_service_error(session, exc, "get user by id")
    finally:
        session.close()


def create_user(name: str, role_id: int, code: str) -> int:
    """Persist a new user and return its id.

    Parameters
    ----------
    name: str
        Display name, unique across users.
    role_id: int
        Identifier of an existing role.
    code: str
        Four digit verification code.

    Returns
    -------
    int
        Primary key of the created user.
    """
    logger.info("create user name=%s role=%s", name, role_id)
    session: Session = SessionLocal()
    try:
        validate_code(code)
        if session.get(Role, role_id) is None:
            raise NotFoundError(f"role {role_id} not found")
        if session.query(User).filter(User.name == name).first() is not None:
            raise DuplicateNameError(f"user {name!r} already exists")

        now = now_iso()
        user = User(
            name=name,
            role_id=role_id,
            code=code,
            is_active=True,
            created_at=now,
            updated_at=now,
            icon=None,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        USER_COUNTER.inc()
        logger.info("created user id=%s name=%s", user.id, name)
        return user.id
    except Exception as exc:
        _handle_service_error(session, exc, "create user")
    finally:
        session.close()


def update_user_icon(user_id: int, icon_path: Optional[str]) -> None:
    """Store ``icon_path`` as the user's icon reference; ``None`` clears it."""
    session: Session = SessionLocal()
    try:
        user = _get_user(session, user_id)
        user.icon = icon_path
        user.updated_at = now_iso()
        session.commit()
        logger.info("updated icon user=%s", user_id)
    except Exception as exc:
        _handle_service_error(session, exc, "update user icon")
    finally:
        session.close()


def _set_user_code(user_id: int, code: str, action: str) -> None:
    session: Session = SessionLocal()
    try:
        validate_code(code)
        user = _get_user(session, user_id)
        user.code = code
        user.updated_at = now_iso()
        session.commit()
        logger.info("%s user=%s", action, user_id)
    except Exception as exc:
        _handle_service_error(session, exc, action)
    finally:
        session.close()


def update_user_code(user_id: int, code: str) -> None:
    _set_user_code(user_id, code, "update user code")


def reset_user_code(user_id: int, default_code: Optional[str] = None) -> None:
    """Reset a user's code to ``default_code`` (the configured sentinel by default)."""
    _set_user_code(user_id, default_code or settings.default_code, "reset user code")


def verify_user_code(user_id: int, candidate_code: str) -> bool:
    """Compare ``candidate_code`` with the stored code.

    A mismatch returns ``False``; only an unknown user raises ``NotFoundError``.
    """
    session: Session = SessionLocal()
    try:
        user = _get_user(session, user_id)
        return hmac.compare_digest(user.code.encode(), str(candidate_code).encode())
    except Exception as exc:
        _handle_service_error(session, exc, "verify user code")
    finally:
        session.close()


def has_event_type_owner(user_id: int) -> bool:
    """Return ``True`` if the user owns at least one event type."""
    session: Session = SessionLocal()
    try:
        count = session.query(func.count(EventType.name)).filter(EventType.owner == user_id).scalar()
        return count > 0
    except Exception as exc:
        _handle_service_error(session, exc, "check event type owner")
    finally:
        session.close()


def delete_user(user_id: int) -> None:
    """Delete a user that owns no event types.

    Events created or verified by the user keep existing with the reference
    cleared.
    """
    logger.info("delete user id=%s", user_id)
    session: Session = SessionLocal()
    try:
        user = _get_user(session, user_id)
        if user.name in PROTECTED_USERS:
            raise ProtectedUserError(f"user {user.name!r} cannot be deleted")
        owned = session.query(func.count(EventType.name)).filter(EventType.owner == user_id).scalar()
        if owned:
            raise HasOwnedEventTypesError(
                f"user {user_id} owns {owned} event type(s); reassign them first"
            )
        session.delete(user)
        session.commit()
        logger.info("deleted user id=%s", user_id)
    except Exception as exc:
        _handle_service_error(session, exc, "delete user")
    finally:
        session.close()


def is_admin_code_default() -> bool:
    """Return ``True`` while the Admin user still has the sentinel code."""
    session: Session = SessionLocal()
    try:
        admin = session.query(User).filter(User.name == ADMIN_NAME).first()
        if admin is None:
            raise NotFoundError("admin user not found")
        return admin.code == settings.default_code
    except Exception as exc:
        _handle_service_error(session, exc, "check admin code")
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


def get_event_types() -> List[EventTypeRecord]:
    session: Session = SessionLocal()
    try:
        rows = session.query(EventType).order_by(EventType.name).all()
        return [EventTypeRecord.model_validate(r) for r in rows]
    except Exception as exc:
        _handle_service_error(session, exc, "get event types")
    finally:
        session.close()


def get_event_types_with_owner() -> List[EventTypeWithOwner]:
    """Return event types with the owner's name and the number of events."""
    session: Session = SessionLocal()
    try:
        rows = (
            session.query(EventType, User.name, func.count(Event.id))
            .outerjoin(User, EventType.owner == User.id)
            .outerjoin(Event, Event.event_type == EventType.name)
            .group_by(EventType.name, User.name)
            .order_by(EventType.name)
            .all()
        )
        return [
            EventTypeWithOwner.model_validate(et).model_copy(
                update={"owner_name": owner_name, "event_count": count}
            )
            for et, owner_name, count in rows
        ]
    except Exception as exc:
        _handle_service_error(session, exc, "get event types with owner")
    finally:
        session.close()


def _validate_event_type_fields(availability: Optional[int], weight: Optional[int]) -> None:
    if availability is not None and availability < 0:
        raise InvalidEventTypeError("availability must be 0 (unlimited) or positive")
    if weight is not None and weight < 1:
        raise InvalidEventTypeError("weight must be at least 1")


def insert_event_type(
    name: str,
    icon: str,
    icon_color: str,
    availability: int = 0,
    owner_id: Optional[int] = None,
    weight: int = 1,
) -> str:
    """Persist a new event type and return its name, which is its key."""
    logger.info("create event type name=%s owner=%s", name, owner_id)
    session: Session = SessionLocal()
    try:
        if not name:
            raise InvalidEventTypeError("event type name must not be empty")
        _validate_event_type_fields(availability, weight)
        if owner_id is not None:
            _get_user(session, owner_id)
        if session.get(EventType, name) is not None:
            raise DuplicateNameError(f"event type {name!r} already exists")

        session.add(
            EventType(
                name=name,
                icon=icon,
                icon_color=icon_color,
                availability=availability,
                owner=owner_id,
                weight=weight,
            )
        )
        session.commit()
        EVENT_TYPE_COUNTER.inc()
        logger.info("created event type name=%s", name)
        return name
    except Exception as exc:
        _handle_service_error(session, exc, "insert event type")
    finally:
        session.close()


def update_event_type(
    name: str,
    *,
    icon: Optional[str] = None,
    icon_color: Optional[str] = None,
    availability: Optional[int] = None,
    owner_id=_UNSET,
    weight: Optional[int] = None,
) -> None:
    """Update the mutable fields of an event type; the name stays fixed.

    Passing ``owner_id=None`` removes the owner. Lowering ``availability``
    only affects future inserts.
    """
    session: Session = SessionLocal()
    try:
        et = session.get(EventType, name)
        if et is None:
            raise NotFoundError(f"event type {name!r} not found")
        _validate_event_type_fields(availability, weight)
        if icon is not None:
            et.icon = icon
        if icon_color is not None:
            et.icon_color = icon_color
        if availability is not None:
            et.availability = availability
        if weight is not None:
            et.weight = weight
        if owner_id is not _UNSET:
            if owner_id is not None:
                _get_user(session, owner_id)
            et.owner = owner_id
        session.commit()
        logger.info("updated event type name=%s", name)
    except Exception as exc:
        _handle_service_error(session, exc, "update event type")
    finally:
        session.close()


def has_events_for_event_type(name: str) -> bool:
    session: Session = SessionLocal()
    try:
        count = session.query(func.count(Event.id)).filter(Event.event_type == name).scalar()
        return count > 0
    except Exception as exc:
        _handle_service_error(session, exc, "check events for event type")
    finally:
        session.close()


def delete_event_type(name: str) -> None:
    """Delete an event type that no event references."""
    session: Session = SessionLocal()
    try:
        et = session.get(EventType, name)
        if et is None:
            raise NotFoundError(f"event type {name!r} not found")
        used = session.query(func.count(Event.id)).filter(Event.event_type == name).scalar()
        if used:
            raise EventTypeInUseError(f"event type {name!r} has {used} event(s)")
        session.delete(et)
        session.commit()
        logger.info("deleted event type name=%s", name)
    except Exception as exc:
        _handle_service_error(session, exc, "delete event type")
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def _count_events(session: Session, event_type: str, day: str) -> int:
    return (
        session.query(func.count(Event.id))
        .filter(Event.event_type == event_type, Event.date == day)
        .scalar()
    )


def _check_availability(session: Session, event_type: EventType, day: str) -> None:
    if not event_type.availability:
        return
    used = _count_events(session, event_type.name, day)
    if used >= event_type.availability:
        raise AvailabilityExceededError(
            f"{event_type.name!r} allows {event_type.availability} per day, "
            f"{used} already marked on {day}"
        )


def count_events_on(event_type: str, day: str) -> int:
    """Number of events of ``event_type`` marked on ``day``."""
    session: Session = SessionLocal()
    try:
        return _count_events(session, event_type, day)
    except Exception as exc:
        _handle_service_error(session, exc, "count events")
    finally:
        session.close()


def insert_event(
    date: str,
    marked_at: Optional[str],
    event_type: str,
    note: Optional[str] = None,
    photo_path: Optional[str] = None,
    created_by: Optional[int] = None,
) -> int:
    """Mark ``date`` with an event of ``event_type`` and return the event id.

    Parameters
    ----------
    date: str
        Calendar date in ``YYYY-MM-DD`` form.
    marked_at: str | None
        ISO timestamp of the marking; defaults to now.
    event_type: str
        Name of an existing event type.
    note, photo_path: str | None
        Optional note and stored photo reference.
    created_by: int | None
        Id of the user marking the date.

    Returns
    -------
    int
        Primary key of the created event.
    """
    logger.info("mark event type=%s date=%s user=%s", event_type, date, created_by)
    session: Session = SessionLocal()
    try:
        _validate_date(date)
        et = session.get(EventType, event_type)
        if et is None:
            raise UnknownEventTypeError(f"event type {event_type!r} does not exist")
        if created_by is not None:
            _get_user(session, created_by)
        _check_availability(session, et, date)

        event = Event(
            date=date,
            marked_at=marked_at or now_iso(),
            event_type=event_type,
            note=note or None,
            photo_path=photo_path or None,
            created_by=created_by,
            is_verified=False,
            verified_at=None,
            verified_by=None,
        )
        session.add(event)
        session.commit()
        session.refresh(event)
        EVENT_COUNTER.inc()
        logger.info("marked event id=%s type=%s date=%s", event.id, event_type, date)
        return event.id
    except Exception as exc:
        _handle_service_error(session, exc, "insert event")
    finally:
        session.close()


def fetch_events(event_type: str) -> List[EventRecord]:
    session: Session = SessionLocal()
    try:
        rows = (
            session.query(Event)
            .filter(Event.event_type == event_type)
            .order_by(Event.date, Event.id)
            .all()
        )
        return [EventRecord.model_validate(e) for e in rows]
    except Exception as exc:
        _handle_service_error(session, exc, "fetch events")
    finally:
        session.close()


def fetch_all_events() -> List[EventRecord]:
    session: Session = SessionLocal()
    try:
        rows = session.query(Event).order_by(Event.id).all()
        return [EventRecord.model_validate(e) for e in rows]
    except Exception as exc:
        _handle_service_error(session, exc, "fetch all events")
    finally:
        session.close()


def fetch_all_events_with_details() -> List[EventDetails]:
    """Return all events, newest date first, with related user names."""
    creator = aliased(User)
    verifier = aliased(User)
    owner = aliased(User)
    session: Session = SessionLocal()
    try:
        rows = (
            session.query(Event, creator.name, verifier.name, owner.name)
            .outerjoin(creator, Event.created_by == creator.id)
            .outerjoin(verifier, Event.verified_by == verifier.id)
            .outerjoin(EventType, Event.event_type == EventType.name)
            .outerjoin(owner, EventType.owner == owner.id)
            .order_by(Event.date.desc(), Event.id.desc())
            .all()
        )
        return [
            EventDetails.model_validate(e).model_copy(
                update={
                    "creator_name": creator_name,
                    "verifier_name": verifier_name,
                    "owner_name": owner_name,
                }
            )
            for e, creator_name, verifier_name, owner_name in rows
        ]
    except Exception as exc:
        _handle_service_error(session, exc, "fetch events with details")
    finally:
        session.close()


def delete_event(event_id: int) -> None:
    logger.info("delete event id=%s", event_id)
    session: Session = SessionLocal()
    try:
        event = _get_event(session, event_id)
        session.delete(event)
        session.commit()
    except Exception as exc:
        _handle_service_error(session, exc, "delete event")
    finally:
        session.close()


def verify_event(event_id: int, verified_by: int) -> None:
    """Mark an event as verified by ``verified_by`` now."""
    logger.info("verify event id=%s by=%s", event_id, verified_by)
    session: Session = SessionLocal()
    try:
        event = _get_event(session, event_id)
        _get_user(session, verified_by)
        event.is_verified = True
        event.verified_at = now_iso()
        event.verified_by = verified_by
        session.commit()
        VERIFY_COUNTER.inc()
    except Exception as exc:
        _handle_service_error(session, exc, "verify event")
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Whole-store snapshot and replacement, used by the archive codec
# ---------------------------------------------------------------------------


def snapshot() -> ArchivePayload:
    """Read every user, role, event type, event and the version row in one session."""
    session: Session = SessionLocal()
    try:
        version = session.query(DbVersion).first()
        return ArchivePayload(
            users=[UserRecord.model_validate(u) for u in session.query(User).order_by(User.id)],
            event_types=[
                EventTypeRecord.model_validate(et)
                for et in session.query(EventType).order_by(EventType.name)
            ],
            events=[EventRecord.model_validate(e) for e in session.query(Event).order_by(Event.id)],
            roles=[RoleRecord.model_validate(r) for r in session.query(Role).order_by(Role.role_id)],
            db_version=DbVersionRecord.model_validate(version) if version else None,
        )
    except Exception as exc:
        _handle_service_error(session, exc, "snapshot store")
    finally:
        session.close()


def replace_all(payload: ArchivePayload) -> None:
    """Replace the whole store with ``payload`` in a single transaction.

    Rows are deleted children first and inserted parents first, keeping the
    archived primary keys. Any failure rolls the store back to its prior
    state.
    """
    session: Session = SessionLocal()
    try:
        for model in (Event, EventType, User, Role, DbVersion):
            session.execute(delete(model))
        session.flush()

        session.add_all(Role(**r.model_dump()) for r in payload.roles)
        session.flush()
        session.add_all(User(**u.model_dump()) for u in payload.users)
        session.flush()
        session.add_all(EventType(**et.model_dump()) for et in payload.event_types)
        session.flush()
        session.add_all(Event(**e.model_dump()) for e in payload.events)
        version = payload.db_version.version if payload.db_version else settings.schema_version
        session.add(DbVersion(version=version))
        session.commit()
        logger.info(
            "replaced store users=%d event_types=%d events=%d",
            len(payload.users),
            len(payload.event_types),
            len(payload.events),
        )
    except IntegrityError as exc:
        session.rollback()
        logger.exception("store replacement violated a constraint")
        raise StorageError(f"replace store failed: {exc.orig}") from exc
    except Exception as exc:
        _handle_service_error(session, exc, "replace store")
    finally:
        session.close()
