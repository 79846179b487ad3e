from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

import mysql.connector
from mysql.connector import errorcode
from flask import Flask, current_app, jsonify, request, session
from flask_cors import CORS
from werkzeug.security import check_password_hash, generate_password_hash

from .balances import (
    CENT,
    ZERO,
    calculate_contributor_balances,
    sort_by_balance,
    spending_by_person,
    to_cents,
    total_expenses,
)
from .config import config
from .db import db

TRIP_COLUMNS = "id, name, description, created_by, created_at, updated_at"
CONTRIBUTOR_COLUMNS = "id, name, email, user_id, trip_id, created_at"
TRIP_CONTRIBUTORS_QUERY = f"SELECT {CONTRIBUTOR_COLUMNS} FROM contributors WHERE trip_id=%s ORDER BY name, id"

MAX_AMOUNT = Decimal("9999999999.99")


def create_app() -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["SESSION_COOKIE_NAME"] = config.SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = config.SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE
    app.logger.setLevel(config.LOG_LEVEL)

    CORS(
        app,
        supports_credentials=True,
        resources={r"/api/*": {"origins": config.CORS_ORIGINS}},
    )

    register_error_handlers(app)
    register_routes(app)
    return app


def require_login(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return func(*args, **kwargs)

    return wrapper


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(mysql.connector.Error)
    def database_error(exc: mysql.connector.Error):
        app.logger.exception("Database error on %s %s: %s", request.method, request.path, exc)
        return jsonify({"error": "database_unavailable"}), 503


def register_routes(app: Flask) -> None:
    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok"})

    # -- auth -----------------------------------------------------------------

    @app.post("/api/register")
    def register():
        payload = _json_object()
        if payload is None:
            return jsonify({"error": "invalid_payload"}), 400
        name = (payload.get("name") or "").strip()
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""

        if not name or not email or not password:
            return jsonify({"error": "missing_fields"}), 400

        if db.fetch_one("SELECT id FROM users WHERE email=%s", (email,)):
            return jsonify({"error": "email_in_use"}), 409

        user_id = db.execute(
            "INSERT INTO users (name, email, password) VALUES (%s, %s, %s)",
            (name, email, generate_password_hash(password)),
        )
        app.logger.info("Registered user %s", user_id)

        _start_session(user_id, name)
        return jsonify({"id": user_id, "name": name, "email": email}), 201

    @app.post("/api/login")
    def login():
        payload = _json_object()
        if payload is None:
            return jsonify({"error": "invalid_payload"}), 400
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""

        if not email or not password:
            return jsonify({"error": "missing_fields"}), 400

        user = db.fetch_one("SELECT id, name, password FROM users WHERE email=%s", (email,))
        if not user or not check_password_hash(user["password"], password):
            return jsonify({"error": "invalid_credentials"}), 401

        _start_session(user["id"], user["name"])
        return jsonify({"id": user["id"], "name": user["name"], "email": email})

    @app.post("/api/logout")
    @require_login
    def logout():
        session.clear()
        return jsonify({"status": "ok"})

    @app.get("/api/session")
    def get_session():
        if "user_id" not in session:
            return jsonify({"authenticated": False})
        return jsonify(
            {
                "authenticated": True,
                "user": {"id": session["user_id"], "name": session["user_name"]},
            }
        )

    # -- trips ----------------------------------------------------------------

    @app.get("/api/trips")
    @require_login
    def list_trips():
        trips = db.fetch_all(
            f"SELECT {TRIP_COLUMNS} FROM trips WHERE created_by=%s ORDER BY created_at DESC, id DESC",
            (session["user_id"],),
        )
        return jsonify([_serialize_trip(trip) for trip in trips])

    @app.post("/api/trips")
    @require_login
    def create_trip():
        payload = _json_object()
        if payload is None:
            return jsonify({"error": "invalid_payload"}), 400
        name = (payload.get("name") or "").strip()
        description = (payload.get("description") or "").strip() or None

        if not name:
            return jsonify({"error": "missing_trip_name"}), 400

        trip_id = db.execute(
            "INSERT INTO trips (name, description, created_by) VALUES (%s, %s, %s)",
            (name, description, session["user_id"]),
        )
        app.logger.info("User %s created trip %s", session["user_id"], trip_id)

        trip = db.fetch_one(f"SELECT {TRIP_COLUMNS} FROM trips WHERE id=%s", (trip_id,))
        return jsonify(_serialize_trip(trip)), 201

    @app.get("/api/trips/<int:trip_id>")
    @require_login
    def get_trip(trip_id: int):
        trip, error = _owned_trip(trip_id)
        if error:
            return error
        return jsonify(_serialize_trip(trip))

    # -- contributors ---------------------------------------------------------

    @app.get("/api/trips/<int:trip_id>/contributors")
    @require_login
    def list_contributors(trip_id: int):
        _, error = _owned_trip(trip_id)
        if error:
            return error
        return jsonify([_serialize_contributor(c) for c in _trip_contributors(trip_id)])

    @app.post("/api/trips/<int:trip_id>/contributors")
    @require_login
    def create_contributor(trip_id: int):
        payload = _json_object()
        if payload is None:
            return jsonify({"error": "invalid_payload"}), 400
        name = (payload.get("name") or "").strip()
        email = (payload.get("email") or "").strip().lower() or None
        user_id = payload.get("user_id")

        if not name:
            return jsonify({"error": "missing_contributor_name"}), 400

        if user_id is not None:
            user_id = _parse_id(user_id)
            if user_id is None:
                return jsonify({"error": "invalid_user_id"}), 400

        _, error = _owned_trip(trip_id)
        if error:
            return error

        if _contributor_by_name(trip_id, name):
            return jsonify({"error": "contributor_exists"}), 409

        if user_id is not None and not db.fetch_one("SELECT id FROM users WHERE id=%s", (user_id,)):
            return jsonify({"error": "user_not_found"}), 400

        try:
            contributor_id = db.execute(
                "INSERT INTO contributors (name, email, user_id, trip_id) VALUES (%s, %s, %s, %s)",
                (name, email, user_id, trip_id),
            )
        except mysql.connector.IntegrityError as exc:
            if exc.errno != errorcode.ER_DUP_ENTRY:
                raise
            return jsonify({"error": "contributor_exists"}), 409
        app.logger.info("Added contributor %s to trip %s", contributor_id, trip_id)

        contributor = db.fetch_one(
            f"SELECT {CONTRIBUTOR_COLUMNS} FROM contributors WHERE id=%s",
            (contributor_id,),
        )
        return jsonify(_serialize_contributor(contributor)), 201

    # -- expenses -------------------------------------------------------------

    @app.get("/api/trips/<int:trip_id>/expenses")
    @require_login
    def list_expenses(trip_id: int):
        _, error = _owned_trip(trip_id)
        if error:
            return error

        expenses = db.fetch_all(
            """
            SELECT e.id, e.amount, e.description, e.trip_id, e.paid_by_contributor_id,
                   e.created_by, e.created_at, e.updated_at, c.name AS paid_by_name
            FROM expenses e
            JOIN contributors c ON e.paid_by_contributor_id = c.id
            WHERE e.trip_id=%s
            ORDER BY e.created_at DESC, e.id DESC
            """,
            (trip_id,),
        )
        return jsonify([_serialize_expense(expense) for expense in expenses])

    @app.post("/api/trips/<int:trip_id>/expenses")
    @require_login
    def add_expense(trip_id: int):
        payload = _json_object()
        if payload is None:
            return jsonify({"error": "invalid_payload"}), 400
        description = (payload.get("description") or "").strip()
        amount = payload.get("amount")

        if not description or amount is None:
            return jsonify({"error": "missing_fields"}), 400

        amount_decimal = _parse_amount(amount)
        if amount_decimal is None or amount_decimal <= 0:
            return jsonify({"error": "invalid_amount"}), 400

        _, error = _owned_trip(trip_id)
        if error:
            return error

        if not _names_payer(payload):
            return jsonify({"error": "missing_payer"}), 400

        contributor_id, error = _resolve_payer(trip_id, payload)
        if error:
            return error

        expense_id = db.execute(
            """
            INSERT INTO expenses (amount, description, trip_id, paid_by_contributor_id, created_by)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (str(amount_decimal), description, trip_id, contributor_id, session["user_id"]),
        )
        app.logger.info("Recorded expense %s (%s) on trip %s", expense_id, amount_decimal, trip_id)

        return jsonify({"id": expense_id, "paid_by_contributor_id": contributor_id}), 201

    @app.put("/api/trips/<int:trip_id>/expenses/<int:expense_id>")
    @require_login
    def update_expense(trip_id: int, expense_id: int):
        payload = _json_object()
        if payload is None:
            return jsonify({"error": "invalid_payload"}), 400

        _, error = _owned_trip(trip_id)
        if error:
            return error

        if not db.fetch_one("SELECT id FROM expenses WHERE id=%s AND trip_id=%s", (expense_id, trip_id)):
            return jsonify({"error": "expense_not_found"}), 404

        assignments: List[str] = []
        params: List[Any] = []

        if "amount" in payload:
            amount_decimal = _parse_amount(payload.get("amount"))
            if amount_decimal is None or amount_decimal <= 0:
                return jsonify({"error": "invalid_amount"}), 400
            assignments.append("amount=%s")
            params.append(str(amount_decimal))

        if "description" in payload:
            description = (payload.get("description") or "").strip()
            if not description:
                return jsonify({"error": "missing_fields"}), 400
            assignments.append("description=%s")
            params.append(description)

        if "paid_by_contributor_id" in payload or "new_contributor_name" in payload:
            if not _names_payer(payload):
                return jsonify({"error": "missing_payer"}), 400
            contributor_id, error = _resolve_payer(trip_id, payload)
            if error:
                return error
            assignments.append("paid_by_contributor_id=%s")
            params.append(contributor_id)

        if not assignments:
            return jsonify({"error": "nothing_to_update"}), 400

        db.execute(
            f"UPDATE expenses SET {', '.join(assignments)}, updated_at=CURRENT_TIMESTAMP "
            "WHERE id=%s AND trip_id=%s",
            (*params, expense_id, trip_id),
        )
        app.logger.info("Updated expense %s on trip %s", expense_id, trip_id)

        return jsonify({"id": expense_id, "status": "updated"})

    @app.delete("/api/trips/<int:trip_id>/expenses/<int:expense_id>")
    @require_login
    def delete_expense(trip_id: int, expense_id: int):
        _, error = _owned_trip(trip_id)
        if error:
            return error

        if not db.fetch_one("SELECT id FROM expenses WHERE id=%s AND trip_id=%s", (expense_id, trip_id)):
            return jsonify({"error": "expense_not_found"}), 404

        db.execute("DELETE FROM expenses WHERE id=%s AND trip_id=%s", (expense_id, trip_id))
        app.logger.info("Deleted expense %s from trip %s", expense_id, trip_id)

        return jsonify({"status": "deleted"})

    # -- balances -------------------------------------------------------------

    @app.get("/api/trips/<int:trip_id>/balances")
    @require_login
    def get_trip_balances(trip_id: int):
        _, error = _owned_trip(trip_id)
        if error:
            return error

        contributors, expenses = _trip_snapshot(trip_id)

        total = total_expenses(expenses)
        average = total / len(contributors) if contributors else ZERO
        balances = sort_by_balance(calculate_contributor_balances(contributors, expenses))

        return jsonify(
            {
                "total_expenses": to_cents(total),
                "average_per_person": to_cents(average),
                "balances": [
                    {
                        "contributor": _serialize_contributor(record["contributor"]),
                        "total_paid": to_cents(record["total_paid"]),
                        "balance": to_cents(record["balance"]),
                    }
                    for record in balances
                ],
            }
        )

    @app.get("/api/trips/<int:trip_id>/summary")
    @require_login
    def get_trip_summary(trip_id: int):
        _, error = _owned_trip(trip_id)
        if error:
            return error

        contributors, expenses = _trip_snapshot(trip_id)
        by_person = spending_by_person(contributors, expenses)

        return jsonify(
            {
                "total_spent": to_cents(total_expenses(expenses)),
                "expense_count": len(expenses),
                "contributor_count": len(by_person),
                "spending_by_person": [
                    {
                        "contributor_id": row["contributor_id"],
                        "name": row["name"],
                        "amount": to_cents(row["amount"]),
                    }
                    for row in by_person
                ],
            }
        )


def _start_session(user_id: int, name: str) -> None:
    session.clear()
    session["user_id"] = user_id
    session["user_name"] = name


def _owned_trip(trip_id: int) -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Any, int]]]:
    trip = db.fetch_one(f"SELECT {TRIP_COLUMNS} FROM trips WHERE id=%s", (trip_id,))
    if not trip:
        return None, (jsonify({"error": "trip_not_found"}), 404)
    if trip["created_by"] != session.get("user_id"):
        return None, (jsonify({"error": "not_authorized"}), 403)
    return trip, None


def _json_object() -> Optional[Dict[str, Any]]:
    payload = request.get_json(force=True)
    if payload is None:
        return {}
    return payload if isinstance(payload, dict) else None


def _trip_contributors(trip_id: int) -> List[Dict[str, Any]]:
    return db.fetch_all(TRIP_CONTRIBUTORS_QUERY, (trip_id,))


def _trip_snapshot(trip_id: int) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Contributors and expense amounts of a trip, read in one transaction."""
    contributors, expenses = db.fetch_snapshot(
        (TRIP_CONTRIBUTORS_QUERY, (trip_id,)),
        ("SELECT id, amount, paid_by_contributor_id FROM expenses WHERE trip_id=%s", (trip_id,)),
    )
    return contributors, expenses


def _contributor_by_name(trip_id: int, name: str) -> Optional[Dict[str, Any]]:
    return db.fetch_one(
        "SELECT id FROM contributors WHERE trip_id=%s AND LOWER(name)=LOWER(%s)",
        (trip_id, name),
    )


def _names_payer(payload: Dict[str, Any]) -> bool:
    return payload.get("paid_by_contributor_id") is not None or bool(
        (payload.get("new_contributor_name") or "").strip()
    )


def _resolve_payer(trip_id: int, payload: Dict[str, Any]) -> Tuple[Optional[int], Optional[Tuple[Any, int]]]:
    """Find the paying contributor, creating it on the fly from a new name."""
    paid_by = payload.get("paid_by_contributor_id")
    if paid_by is not None:
        paid_by = _parse_id(paid_by)
        if paid_by is None:
            return None, (jsonify({"error": "invalid_contributor"}), 400)
        record = db.fetch_one(
            "SELECT id FROM contributors WHERE id=%s AND trip_id=%s",
            (paid_by, trip_id),
        )
        if not record:
            return None, (jsonify({"error": "contributor_not_in_trip"}), 400)
        return paid_by, None

    name = (payload.get("new_contributor_name") or "").strip()
    existing = _contributor_by_name(trip_id, name)
    if existing:
        return existing["id"], None

    try:
        contributor_id = db.execute(
            "INSERT INTO contributors (name, trip_id) VALUES (%s, %s)",
            (name, trip_id),
        )
    except mysql.connector.IntegrityError as exc:
        # another request added the same name first
        if exc.errno != errorcode.ER_DUP_ENTRY:
            raise
        existing = _contributor_by_name(trip_id, name)
        if not existing:
            raise
        return existing["id"], None
    current_app.logger.info("Added contributor %s to trip %s", contributor_id, trip_id)
    return contributor_id, None


def _parse_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _parse_amount(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        return None
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite():
            return None
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    # expenses.amount is DECIMAL(12, 2)
    if amount > MAX_AMOUNT:
        return None
    return amount


def _isoformat(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _serialize_trip(trip: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": trip["id"],
        "name": trip["name"],
        "description": trip.get("description"),
        "created_by": trip.get("created_by"),
        "created_at": _isoformat(trip.get("created_at")),
        "updated_at": _isoformat(trip.get("updated_at")),
    }


def _serialize_contributor(contributor: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": contributor["id"],
        "name": contributor["name"],
        "email": contributor.get("email"),
        "user_id": contributor.get("user_id"),
        "trip_id": contributor.get("trip_id"),
        "created_at": _isoformat(contributor.get("created_at")),
    }


def _serialize_expense(expense: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": expense["id"],
        "amount": float(expense["amount"]),
        "description": expense["description"],
        "trip_id": expense["trip_id"],
        "paid_by_contributor_id": expense["paid_by_contributor_id"],
        "paid_by_name": expense.get("paid_by_name"),
        "created_by": expense.get("created_by"),
        "created_at": _isoformat(expense.get("created_at")),
        "updated_at": _isoformat(expense.get("updated_at")),
    }


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    app.run(debug=True)
