from datetime import datetime

import pymysql
import pytest

from backend.main import MySQLJournalStore, PersistenceError

CREATED = datetime(2024, 5, 1, 12, 0)


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.lastrowid = None

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def execute(self, sql: str, params=()) -> int:
        self.connection.executed.append((" ".join(sql.split()), params))
        return 1

    def fetchone(self):
        return self.connection.row

    def fetchall(self):
        return [self.connection.row] if self.connection.row else []


class FakeConnection:
    def __init__(self, row) -> None:
        self.row = row
        self.executed: list[tuple[str, tuple]] = []
        self.closed = False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def connect(monkeypatch: pytest.MonkeyPatch):
    def install(row=None) -> FakeConnection:
        connection = FakeConnection(row)
        monkeypatch.setattr(pymysql, "connect", lambda **kwargs: connection)
        return connection

    return install


def _store() -> MySQLJournalStore:
    return MySQLJournalStore("db", 3306, "dreamshell", "secret", "dreamshell")


def test_user_lookups_bind_their_values(connect) -> None:
    connection = connect(
        {
            "id": "abc",
            "email": "ada@example.com",
            "password_hash": "salt$digest",
            "verified": 1,
            "verify_token": None,
            "reset_token": None,
            "reset_expires": None,
            "created_at": CREATED,
        }
    )
    store = _store()
    user = store.get_user_by_email("ada@example.com' OR '1'='1")
    assert user.email == "ada@example.com"
    assert user.created_at.tzinfo is not None
    store.get_user("abc")

    by_email, by_id = connection.executed
    assert by_email[0].endswith("WHERE email = %s")
    assert by_email[1] == ("ada@example.com' OR '1'='1",)
    assert by_id[0].endswith("WHERE id = %s")
    assert by_id[1] == ("abc",)
    assert connection.closed


def test_corrupt_persona_row_raises_persistence_error(connect) -> None:
    connect({"user_id": "abc", "version": 2, "traits": "{not json", "last_updated": CREATED})
    with pytest.raises(PersistenceError):
        _store().get_persona("abc")


def test_driver_errors_are_wrapped(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(**kwargs):
        raise pymysql.err.OperationalError(2003, "Can't connect")

    monkeypatch.setattr(pymysql, "connect", refuse)
    with pytest.raises(PersistenceError):
        _store().ping()
