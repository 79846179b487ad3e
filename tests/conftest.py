from datetime import datetime
from decimal import Decimal

import pytest

import tripsplit.app as app_module

USER_ID = 7


class FakeDatabase:
    """Stands in for ``tripsplit.db.Database``.

    Results are registered against a SQL fragment; the longest fragment
    contained in the (whitespace-normalized) query wins. A result can be a
    plain value, a callable taking the query params, or an exception to raise.
    """

    def __init__(self):
        self.handlers = {}
        self.calls = []
        self.snapshots = []
        self._next_id = 100

    def on(self, fragment, result):
        self.handlers[fragment] = result

    def executed(self, fragment):
        return [params for query, params in self.calls if fragment in query]

    def _dispatch(self, query, params, default):
        normalized = " ".join(query.split())
        params = tuple(params or ())
        self.calls.append((normalized, params))
        matches = [fragment for fragment in self.handlers if fragment in normalized]
        if not matches:
            return default() if callable(default) else default
        result = self.handlers[max(matches, key=len)]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(params)
        return result

    def _new_id(self):
        self._next_id += 1
        return self._next_id

    def fetch_one(self, query, params=None):
        return self._dispatch(query, params, None)

    def fetch_all(self, query, params=None):
        return self._dispatch(query, params, list)

    def fetch_snapshot(self, *statements):
        self.snapshots.append([" ".join(query.split()) for query, _ in statements])
        return [self._dispatch(query, params, list) for query, params in statements]

    def execute(self, query, params=None):
        return self._dispatch(query, params, self._new_id)


@pytest.fixture
def fake_db(monkeypatch):
    fake = FakeDatabase()
    monkeypatch.setattr(app_module, "db", fake)
    return fake


@pytest.fixture
def app(fake_db):
    application = app_module.create_app()
    application.config.update(TESTING=True)
    return application


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def logged_in(client):
    with client.session_transaction() as sess:
        sess["user_id"] = USER_ID
        sess["user_name"] = "Ada"
    return client


@pytest.fixture
def trip():
    return {
        "id": 1,
        "name": "Lisbon",
        "description": "Long weekend",
        "created_by": USER_ID,
        "created_at": datetime(2024, 5, 1, 9, 30),
        "updated_at": datetime(2024, 5, 1, 9, 30),
    }


@pytest.fixture
def owned_trip(fake_db, trip):
    fake_db.on("FROM trips WHERE id=%s", trip)
    return trip


@pytest.fixture
def contributors():
    return [
        {"id": 1, "name": "Alice", "email": None, "user_id": None, "trip_id": 1,
         "created_at": datetime(2024, 5, 1, 10, 0)},
        {"id": 2, "name": "Bob", "email": "bob@example.com", "user_id": None, "trip_id": 1,
         "created_at": datetime(2024, 5, 1, 10, 5)},
    ]


@pytest.fixture
def expense_amounts():
    return [
        {"id": 11, "amount": Decimal("100.00"), "paid_by_contributor_id": 1},
        {"id": 12, "amount": Decimal("50.00"), "paid_by_contributor_id": 2},
    ]
