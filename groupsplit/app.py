from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from functools import wraps
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request, session
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from .balances import group_balance_report
from .config import config
from .models import CATEGORIES, DEFAULT_CATEGORY, DEFAULT_SPLIT_TYPE, ExpenseEntry, ExpenseId, GroupId, MemberId
from .splits import build_splits, check_shares, check_split_total, equal_shares, to_amount
from .store import LedgerStore, store


def create_app(overrides: Optional[Dict[str, Any]] = None, ledger: Optional[LedgerStore] = None) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["SESSION_COOKIE_NAME"] = config.SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = config.SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE
    if overrides:
        app.config.update(overrides)

    _configure_logging(app)

    CORS(
        app,
        supports_credentials=True,
        resources={r"/api/*": {"origins": config.CORS_ORIGINS}},
    )

    register_routes(app, ledger if ledger is not None else store)
    register_error_handlers(app)
    return app


def _configure_logging(app: Flask) -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(config.LOG_LEVEL)


def require_login(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return func(*args, **kwargs)

    return wrapper


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.name.lower().replace(" ", "_")}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "internal_error"}), 500


def register_routes(app: Flask, ledger: LedgerStore) -> None:
    # Auth

    @app.post("/api/auth/register")
    def register():
        payload = _json_payload()
        try:
            name = _text(payload, "name")
            email = _text(payload, "email").lower()
            password = _text(payload, "password", strip=False)
        except ValueError as exc:
            return _error(str(exc), 400)
        phone_number = str(payload.get("phone_number") or "").strip()

        if not name or not email or not phone_number or not password:
            return _error("missing_fields", 400)

        if ledger.user_exists(email, phone_number):
            return _error("email_in_use", 409)

        user_id = ledger.create_user(name, email, phone_number, generate_password_hash(password))
        app.logger.info("Registered user %s", user_id)

        session["user_id"] = user_id
        session["user_name"] = name

        return jsonify({"_id": user_id, "name": name, "email": email, "phoneNumber": phone_number}), 201

    @app.post("/api/auth/login")
    def login():
        payload = _json_payload()
        try:
            email = _text(payload, "email").lower()
            password = _text(payload, "password", strip=False)
        except ValueError as exc:
            return _error(str(exc), 400)

        if not email or not password:
            return _error("missing_fields", 400)

        user = ledger.find_user_credentials(email)
        if not user or not check_password_hash(user["password"], password):
            app.logger.warning("Failed login attempt for %s", email)
            return _error("invalid_credentials", 401)

        session["user_id"] = user["id"]
        session["user_name"] = user["name"]

        return jsonify(
            {"_id": user["id"], "name": user["name"], "email": user["email"], "phoneNumber": user["phone_number"]}
        )

    @app.post("/api/auth/logout")
    @require_login
    def logout():
        session.clear()
        return jsonify({"status": "ok"})

    @app.get("/api/auth/session")
    def get_session():
        if "user_id" in session:
            return jsonify(
                {
                    "authenticated": True,
                    "user": {"_id": session["user_id"], "name": session["user_name"]},
                }
            )
        return jsonify({"authenticated": False})

    # Users

    @app.get("/api/users/search")
    @require_login
    def search_users():
        query = (request.args.get("query") or "").strip()
        if not query:
            return _error("missing_query", 400)
        return jsonify({"users": ledger.search_users(query)})

    # Groups

    @app.post("/api/groups")
    @require_login
    def create_group():
        payload = _json_payload()
        try:
            name = _text(payload, "name")
            description = _optional_text(payload, "description")
            requested = _parse_member_ids(payload.get("members"))
        except ValueError as exc:
            return _error(str(exc), 400)
        if not name:
            return _error("missing_fields", 400)

        user_id = _current_user()
        # Unknown accounts are skipped rather than failing the whole request
        known = ledger.fetch_users(requested)
        members = [member for member in requested if member in known]

        group_id = ledger.create_group(name, description, user_id, members)
        app.logger.info("User %s created group %s", user_id, group_id)

        group = ledger.get_group(group_id)
        return jsonify(group.to_dict(ledger.fetch_users(group.members))), 201

    @app.get("/api/groups")
    @require_login
    def list_groups():
        groups = ledger.list_groups(_current_user())
        profiles = ledger.fetch_users(member for group in groups for member in group.members)
        return jsonify({"count": len(groups), "groups": [group.to_dict(profiles) for group in groups]})

    @app.get("/api/groups/<int:group_id>")
    @require_login
    def get_group(group_id: int):
        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)
        if not group.is_member(_current_user()):
            return _error("not_authorized", 403)
        return jsonify(group.to_dict(ledger.fetch_users(group.members)))

    @app.put("/api/groups/<int:group_id>")
    @require_login
    def update_group(group_id: int):
        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)
        if not group.is_admin(_current_user()):
            return _error("forbidden_only_admin", 403)

        payload = _json_payload()
        try:
            name = _text(payload, "name") or group.name
            # An explicit null clears the description
            description = _optional_text(payload, "description") if "description" in payload else group.description
        except ValueError as exc:
            return _error(str(exc), 400)
        ledger.update_group(group.id, name, description)

        group = ledger.get_group(group.id)
        return jsonify(group.to_dict(ledger.fetch_users(group.members)))

    @app.post("/api/groups/<int:group_id>/members")
    @require_login
    def add_member(group_id: int):
        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)
        if not group.is_admin(_current_user()):
            return _error("forbidden_only_admin", 403)

        payload = _json_payload()
        if payload.get("user_id") is None:
            return _error("missing_fields", 400)
        try:
            (member,) = _parse_member_ids([payload["user_id"]])
        except ValueError as exc:
            return _error(str(exc), 400)

        if ledger.get_user(member) is None:
            return _error("user_not_found", 404)
        if group.is_member(member):
            return _error("already_member", 400)

        ledger.add_member(group.id, member)
        app.logger.info("Added user %s to group %s", member, group.id)

        group = ledger.get_group(group.id)
        return jsonify(group.to_dict(ledger.fetch_users(group.members)))

    @app.delete("/api/groups/<int:group_id>/members/<int:user_id>")
    @require_login
    def remove_member(group_id: int, user_id: int):
        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)
        if not group.is_admin(_current_user()):
            return _error("forbidden_only_admin", 403)

        member = MemberId(user_id)
        if group.is_admin(member):
            return _error("cannot_remove_admin", 400)
        if not group.is_member(member):
            return _error("user_not_in_group", 404)

        # Their ledger entries stay; balances keep reporting them.
        ledger.remove_member(group.id, member)
        app.logger.info("Removed user %s from group %s", member, group.id)

        group = ledger.get_group(group.id)
        return jsonify(group.to_dict(ledger.fetch_users(group.members)))

    @app.post("/api/groups/<int:group_id>/leave")
    @require_login
    def leave_group(group_id: int):
        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)

        user_id = _current_user()
        if group.is_admin(user_id):
            return _error("admin_cannot_leave", 400)
        if not group.is_member(user_id):
            return _error("not_authorized", 403)

        ledger.remove_member(group.id, user_id)
        app.logger.info("User %s left group %s", user_id, group.id)
        return jsonify({"status": "left"})

    @app.delete("/api/groups/<int:group_id>")
    @require_login
    def delete_group(group_id: int):
        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)
        if not group.is_admin(_current_user()):
            return _error("forbidden_only_admin", 403)

        ledger.delete_group(group.id)
        app.logger.info("Deleted group %s", group.id)
        return jsonify({"status": "deleted"})

    # Expenses

    @app.post("/api/groups/<int:group_id>/expenses")
    @require_login
    def add_expense(group_id: int):
        payload = _json_payload()
        try:
            title = _text(payload, "title")
            description = _optional_text(payload, "description")
        except ValueError as exc:
            return _error(str(exc), 400)
        if not title or payload.get("amount") is None:
            return _error("missing_fields", 400)

        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)
        user_id = _current_user()
        if not group.is_member(user_id):
            return _error("not_authorized", 403)

        try:
            amount = _parse_expense_amount(payload["amount"])
            split_type = payload.get("split_type") or DEFAULT_SPLIT_TYPE
            category = _parse_category(payload.get("category"))
            date = _parse_date(payload.get("date")) or _utcnow()
            splits = build_splits(
                split_type,
                amount,
                group.members,
                payload.get("splits"),
                payload.get("split_among"),
            )
        except ValueError as exc:
            return _error(str(exc), 400)

        entry = ExpenseEntry(
            id=None,
            payer=user_id,
            group_id=group.id,
            amount=amount,
            splits=splits,
            split_type=split_type,
            category=category,
            title=title,
            description=description,
            date=date,
        )
        expense_id = ledger.create_expense(entry)
        entry = entry.with_changes(id=expense_id)
        app.logger.info("User %s added expense %s to group %s", user_id, expense_id, group.id)

        return jsonify(entry.to_dict(ledger.fetch_users(entry.participants()))), 201

    @app.get("/api/groups/<int:group_id>/expenses")
    @require_login
    def get_group_expenses(group_id: int):
        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)
        if not group.is_member(_current_user()):
            return _error("not_authorized", 403)

        entries = sorted(
            ledger.fetch_entries(group.id),
            key=lambda entry: entry.date or datetime.min,
            reverse=True,
        )
        profiles = ledger.fetch_users(member for entry in entries for member in entry.participants())
        return jsonify({"count": len(entries), "expenses": [entry.to_dict(profiles) for entry in entries]})

    @app.get("/api/groups/<int:group_id>/balances")
    @require_login
    def get_group_balances(group_id: int):
        group = ledger.get_group(GroupId(group_id))
        if group is None:
            return _error("group_not_found", 404)
        if not group.is_member(_current_user()):
            return _error("not_authorized", 403)

        return jsonify(group_balance_report(ledger, group.id))

    @app.get("/api/expenses/<int:expense_id>")
    @require_login
    def get_expense(expense_id: int):
        entry = ledger.get_expense(ExpenseId(expense_id))
        if entry is None:
            return _error("expense_not_found", 404)
        group = ledger.get_group(entry.group_id)
        if group is None or not group.is_member(_current_user()):
            return _error("not_authorized", 403)
        return jsonify(entry.to_dict(ledger.fetch_users(entry.participants())))

    @app.put("/api/expenses/<int:expense_id>")
    @require_login
    def update_expense(expense_id: int):
        entry = ledger.get_expense(ExpenseId(expense_id))
        if entry is None:
            return _error("expense_not_found", 404)
        if entry.payer != _current_user():
            return _error("forbidden_only_payer_can_update", 403)

        group = ledger.get_group(entry.group_id)
        if group is None:
            return _error("group_not_found", 404)

        payload = _json_payload()
        try:
            entry = _apply_expense_changes(entry, payload, group.members)
        except ValueError as exc:
            return _error(str(exc), 400)

        ledger.update_expense(entry)
        app.logger.info("Updated expense %s", entry.id)
        return jsonify(entry.to_dict(ledger.fetch_users(entry.participants())))

    @app.delete("/api/expenses/<int:expense_id>")
    @require_login
    def delete_expense(expense_id: int):
        entry = ledger.get_expense(ExpenseId(expense_id))
        if entry is None:
            return _error("expense_not_found", 404)

        # The payer or the group admin may delete
        user_id = _current_user()
        group = ledger.get_group(entry.group_id)
        is_admin = group is not None and group.is_admin(user_id)
        if entry.payer != user_id and not is_admin:
            return _error("forbidden_only_payer_or_admin_can_delete", 403)

        ledger.delete_expense(entry.id)
        app.logger.info("User %s deleted expense %s", user_id, entry.id)
        return jsonify({"status": "deleted"}), 200


def _error(code: str, status: int):
    return jsonify({"error": code}), status


def _json_payload() -> Dict[str, Any]:
    payload = request.get_json(force=True)
    return payload if isinstance(payload, dict) else {}


def _current_user() -> MemberId:
    return MemberId(session["user_id"])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _text(payload: Dict[str, Any], key: str, strip: bool = True) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError("invalid_field")
    return value.strip() if strip else value


def _optional_text(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError("invalid_field")
    return value


def _parse_member_ids(values: Any) -> List[MemberId]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValueError("invalid_members")
    members: List[MemberId] = []
    for value in values:
        if isinstance(value, bool):
            raise ValueError("invalid_members")
        try:
            members.append(MemberId(int(value)))
        except (TypeError, ValueError):
            raise ValueError("invalid_members") from None
    return members


def _parse_expense_amount(value: Any) -> Decimal:
    amount = to_amount(value)
    if amount < 0:
        raise ValueError("invalid_amount")
    return amount


def _parse_category(value: Any) -> str:
    category = value or DEFAULT_CATEGORY
    if category not in CATEGORIES:
        raise ValueError("invalid_category")
    return category


def _parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError("invalid_date")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError("invalid_date") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _apply_expense_changes(entry: ExpenseEntry, payload: Dict[str, Any], group_members) -> ExpenseEntry:
    """Merge a partial update into ``entry`` and re-check the split total."""
    changes: Dict[str, Any] = {}

    if "title" in payload:
        title = _text(payload, "title")
        if not title:
            raise ValueError("missing_fields")
        changes["title"] = title
    if "description" in payload:
        changes["description"] = _optional_text(payload, "description")
    if payload.get("category"):
        changes["category"] = _parse_category(payload["category"])
    if payload.get("date"):
        changes["date"] = _parse_date(payload["date"])

    amount = _parse_expense_amount(payload["amount"]) if payload.get("amount") is not None else entry.amount
    split_type = payload.get("split_type") or entry.split_type
    resplit = bool(payload.get("splits") or payload.get("split_among")) or split_type != entry.split_type

    if resplit:
        splits = build_splits(split_type, amount, group_members, payload.get("splits"), payload.get("split_among"))
    elif split_type == "equal" and amount != entry.amount and entry.splits:
        # Same participants, new total
        splits = tuple(equal_shares(amount, [split.member for split in entry.splits]))
        check_shares(amount, splits)
    else:
        splits = entry.splits
        check_split_total(amount, splits)

    changes.update(amount=amount, split_type=split_type, splits=splits)
    return entry.with_changes(**changes)


app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
