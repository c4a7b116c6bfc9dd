import re

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from stickerchart import services
from stickerchart.database import DbVersion, make_engine
from stickerchart.errors import (
    AvailabilityExceededError,
    DuplicateNameError,
    EventTypeInUseError,
    HasOwnedEventTypesError,
    InvalidCodeError,
    InvalidDateError,
    InvalidEventTypeError,
    NotFoundError,
    ProtectedUserError,
    StorageInitError,
    UnknownEventTypeError,
)


def test_initialize_seeds_roles_and_builtin_users(db):
    roles = {r.role_id: r.role_name for r in services.get_roles()}
    assert roles == {1: "Admin", 2: "Guest", 3: "User"}

    names = [u.name for u in services.get_users()]
    assert names == ["Admin", "Guest"]
    assert services.get_user_by_name("Guest").code == "0000"
    assert services.get_db_version().version == 1


def test_initialize_twice_adds_nothing(db):
    services.initialize()
    assert len(services.get_roles()) == 3
    assert len(services.get_users()) == 2
    with db() as session:
        assert session.query(DbVersion).count() == 1


def test_initialize_unopenable_database(monkeypatch, tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'missing' / 'chart.db'}")
    monkeypatch.setattr(services, "SessionLocal", sessionmaker(bind=engine, future=True))

    with pytest.raises(StorageInitError) as excinfo:
        services.initialize()

    assert isinstance(excinfo.value.__cause__, SQLAlchemyError)
    assert not (tmp_path / "missing").exists()


def test_create_user_and_lookup(db):
    user_id = services.create_user("Bob", 3, "4321")
    user = services.get_user_by_name("Bob")
    assert user.id == user_id
    assert user.code == "4321"
    assert user.role_id == 3
    assert user.is_active
    assert services.get_user_by_id(user_id) == user


def test_lookup_missing_user_returns_none(db):
    assert services.get_user_by_name("Nobody") is None
    assert services.get_user_by_id(999) is None


@pytest.mark.parametrize("code", ["123", "12345", "abcd", "12a4", "", " 123"])
def test_create_user_rejects_bad_code(db, code):
    with pytest.raises(InvalidCodeError):
        services.create_user("Bob", 3, code)
    assert services.get_user_by_name("Bob") is None


def test_create_user_duplicate_name(db, alice):
    with pytest.raises(DuplicateNameError):
        services.create_user("Alice", 3, "9999")


def test_create_user_unknown_role(db):
    with pytest.raises(NotFoundError):
        services.create_user("Bob", 42, "1234")


def test_update_and_reset_code(db, alice):
    services.update_user_code(alice, "5678")
    assert services.verify_user_code(alice, "5678")
    assert not services.verify_user_code(alice, "1234")

    services.reset_user_code(alice)
    assert services.get_user_by_id(alice).code == "0000"

    with pytest.raises(InvalidCodeError):
        services.update_user_code(alice, "12")
    with pytest.raises(NotFoundError):
        services.update_user_code(999, "1111")


def test_verify_user_code_unknown_user(db):
    with pytest.raises(NotFoundError):
        services.verify_user_code(999, "0000")


def test_update_user_icon(db, alice):
    before = services.get_user_by_id(alice)
    services.update_user_icon(alice, "icons/alice.png")
    after = services.get_user_by_id(alice)
    assert after.icon == "icons/alice.png"
    assert after.updated_at >= before.updated_at

    services.update_user_icon(alice, None)
    assert services.get_user_by_id(alice).icon is None


def test_delete_user_blocked_while_owning_event_types(db, alice):
    services.insert_event_type("Reading", "book", "#FF0000", 0, alice, 1)
    assert services.has_event_type_owner(alice)

    with pytest.raises(HasOwnedEventTypesError):
        services.delete_user(alice)
    assert services.get_user_by_id(alice) is not None

    services.update_event_type("Reading", owner_id=None)
    assert not services.has_event_type_owner(alice)
    services.delete_user(alice)
    assert services.get_user_by_id(alice) is None


def test_delete_user_clears_event_references(db, alice):
    services.insert_event_type("Reading", "book", "#FF0000")
    event_id = services.insert_event("2024-01-01", None, "Reading", created_by=alice)
    services.verify_event(event_id, alice)

    services.delete_user(alice)

    (event,) = services.fetch_all_events()
    assert event.id == event_id
    assert event.created_by is None
    assert event.verified_by is None


def test_builtin_users_cannot_be_deleted(db):
    for name in ("Guest", "Admin"):
        user = services.get_user_by_name(name)
        with pytest.raises(ProtectedUserError):
            services.delete_user(user.id)


def test_delete_missing_user(db):
    with pytest.raises(NotFoundError):
        services.delete_user(999)


def test_insert_event_type_validation(db, alice):
    services.insert_event_type("Reading", "book", "#FF0000", 0, alice, 1)
    with pytest.raises(DuplicateNameError):
        services.insert_event_type("Reading", "star", "#00FF00")
    with pytest.raises(InvalidEventTypeError):
        services.insert_event_type("Running", "shoe", "#00FF00", weight=0)
    with pytest.raises(InvalidEventTypeError):
        services.insert_event_type("Running", "shoe", "#00FF00", availability=-1)
    with pytest.raises(NotFoundError):
        services.insert_event_type("Running", "shoe", "#00FF00", owner_id=999)
    assert [et.name for et in services.get_event_types()] == ["Reading"]


def test_event_types_with_owner(db, alice):
    services.insert_event_type("Reading", "book", "#FF0000", 0, alice, 2)
    services.insert_event_type("Chores", "broom", "#0000FF")
    services.insert_event("2024-01-01", None, "Reading", created_by=alice)
    services.insert_event("2024-01-02", None, "Reading", created_by=alice)

    rows = {et.name: et for et in services.get_event_types_with_owner()}
    assert rows["Reading"].owner_name == "Alice"
    assert rows["Reading"].event_count == 2
    assert rows["Reading"].weight == 2
    assert rows["Chores"].owner_name is None
    assert rows["Chores"].event_count == 0


def test_update_event_type(db, alice):
    services.insert_event_type("Reading", "book", "#FF0000", 3)
    services.update_event_type("Reading", icon="star", availability=1, owner_id=alice)

    (et,) = services.get_event_types()
    assert et.icon == "star"
    assert et.icon_color == "#FF0000"
    assert et.availability == 1
    assert et.owner == alice

    with pytest.raises(NotFoundError):
        services.update_event_type("Missing", icon="x")
    with pytest.raises(InvalidEventTypeError):
        services.update_event_type("Reading", weight=0)


def test_delete_event_type_in_use(db):
    services.insert_event_type("Reading", "book", "#FF0000")
    event_id = services.insert_event("2024-01-01", None, "Reading")

    assert services.has_events_for_event_type("Reading")
    with pytest.raises(EventTypeInUseError):
        services.delete_event_type("Reading")

    services.delete_event(event_id)
    services.delete_event_type("Reading")
    assert services.get_event_types() == []


def test_availability_cap(db):
    services.insert_event_type("Reading", "book", "#FF0000", 2)
    services.insert_event("2024-01-01", None, "Reading")
    services.insert_event("2024-01-01", None, "Reading")
    with pytest.raises(AvailabilityExceededError):
        services.insert_event("2024-01-01", None, "Reading")

    assert services.count_events_on("Reading", "2024-01-01") == 2
    # other days are counted separately
    services.insert_event("2024-01-02", None, "Reading")


def test_unlimited_availability(db):
    services.insert_event_type("Chores", "broom", "#0000FF", 0)
    for _ in range(5):
        services.insert_event("2024-01-01", None, "Chores")
    assert services.count_events_on("Chores", "2024-01-01") == 5


def test_lowering_availability_keeps_existing_events(db):
    services.insert_event_type("Reading", "book", "#FF0000", 3)
    for _ in range(3):
        services.insert_event("2024-01-01", None, "Reading")
    services.update_event_type("Reading", availability=1)

    assert len(services.fetch_events("Reading")) == 3
    with pytest.raises(AvailabilityExceededError):
        services.insert_event("2024-01-01", None, "Reading")


def test_insert_event_unknown_type(db):
    with pytest.raises(UnknownEventTypeError):
        services.insert_event("2024-01-01", None, "Missing")


@pytest.mark.parametrize("value", ["2024/01/01", "2024-13-01", "2024-02-30", "20240101", ""])
def test_insert_event_invalid_date(db, value):
    services.insert_event_type("Reading", "book", "#FF0000")
    with pytest.raises(InvalidDateError):
        services.insert_event(value, None, "Reading")


def test_alice_reading_scenario(db):
    alice_id = services.create_user("Alice", 3, "1234")
    services.insert_event_type("Reading", "book", "#FF0000", 0, alice_id, 1)
    services.insert_event("2024-01-01", services.now_iso(), "Reading", None, None, alice_id)

    events = services.fetch_all_events()
    assert len(events) == 1
    assert events[0].event_type == "Reading"
    assert events[0].created_by == alice_id
    assert not events[0].is_verified


def test_insert_event_defaults_marked_at(db):
    services.insert_event_type("Reading", "book", "#FF0000")
    services.insert_event("2024-01-01", None, "Reading")
    (event,) = services.fetch_all_events()
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", event.marked_at)


def test_verify_and_delete_event(db, alice):
    admin = services.get_user_by_name("Admin")
    services.insert_event_type("Reading", "book", "#FF0000")
    event_id = services.insert_event("2024-01-01", None, "Reading", "read 20 pages", None, alice)

    services.verify_event(event_id, admin.id)
    (event,) = services.fetch_events("Reading")
    assert event.is_verified
    assert event.verified_by == admin.id
    assert event.verified_at is not None
    assert event.note == "read 20 pages"

    services.delete_event(event_id)
    assert services.fetch_all_events() == []
    with pytest.raises(NotFoundError):
        services.delete_event(event_id)
    with pytest.raises(NotFoundError):
        services.verify_event(event_id, admin.id)


def test_fetch_all_events_with_details(db, alice):
    admin = services.get_user_by_name("Admin")
    services.insert_event_type("Reading", "book", "#FF0000", 0, alice)
    first = services.insert_event("2024-01-01", None, "Reading", created_by=alice)
    second = services.insert_event("2024-01-05", None, "Reading", created_by=alice)
    services.verify_event(first, admin.id)

    details = services.fetch_all_events_with_details()
    assert [d.id for d in details] == [second, first]
    assert details[0].creator_name == "Alice"
    assert details[0].verifier_name is None
    assert details[1].verifier_name == "Admin"
    assert details[1].owner_name == "Alice"


def test_is_admin_code_default(db):
    assert services.is_admin_code_default()
    admin = services.get_user_by_name("Admin")
    services.update_user_code(admin.id, "2468")
    assert not services.is_admin_code_default()
