from __future__ import annotations

import itertools
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import pytest

from groupsplit.app import create_app
from groupsplit.models import ExpenseEntry, ExpenseId, Group, GroupId, MemberId, Split


class InMemoryLedger:
    """Dict-backed stand-in for LedgerStore with the same method surface."""

    def __init__(self) -> None:
        self.users: Dict[MemberId, Dict[str, Any]] = {}
        self.groups: Dict[GroupId, Dict[str, Any]] = {}
        self.expenses: Dict[ExpenseId, ExpenseEntry] = {}
        self.user_lookups = 0
        self._ids = itertools.count(1)

    # Users

    def create_user(self, name, email, phone_number, password_hash):
        user_id = MemberId(next(self._ids))
        self.users[user_id] = {
            "id": user_id,
            "name": name,
            "email": email,
            "phone_number": phone_number,
            "password": password_hash,
        }
        return user_id

    def find_user_credentials(self, email):
        for user in self.users.values():
            if user["email"] == email:
                return dict(user)
        return None

    def user_exists(self, email, phone_number):
        return any(u["email"] == email or u["phone_number"] == phone_number for u in self.users.values())

    def get_user(self, user_id):
        user = self.users.get(user_id)
        return {"_id": user["id"], "name": user["name"], "email": user["email"]} if user else None

    def fetch_users(self, user_ids: Iterable[MemberId]):
        self.user_lookups += 1
        profiles = {}
        for user_id in user_ids:
            profile = self.get_user(user_id)
            if profile:
                profiles[user_id] = profile
        return profiles

    def search_users(self, query, limit=10):
        matches = [
            dict(self.get_user(u["id"]), phoneNumber=u["phone_number"])
            for u in self.users.values()
            if query.lower() in u["email"].lower() or u["phone_number"] == query
        ]
        return matches[:limit]

    # Groups

    def _to_group(self, row):
        return Group(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            admin=row["admin"],
            members=tuple(row["members"]),
            created_at=row["created_at"],
        )

    def create_group(self, name, description, admin, members=()):
        group_id = GroupId(next(self._ids))
        self.groups[group_id] = {
            "id": group_id,
            "name": name,
            "description": description,
            "admin": admin,
            "members": list(dict.fromkeys([admin, *members])),
            "created_at": datetime(2024, 1, 1),
        }
        return group_id

    def get_group(self, group_id) -> Optional[Group]:
        row = self.groups.get(group_id)
        return self._to_group(row) if row else None

    def list_groups(self, member):
        rows = [row for row in self.groups.values() if member in row["members"]]
        return [self._to_group(row) for row in reversed(rows)]

    def update_group(self, group_id, name, description):
        self.groups[group_id].update(name=name, description=description)

    def add_member(self, group_id, member):
        self.groups[group_id]["members"].append(member)

    def remove_member(self, group_id, member):
        self.groups[group_id]["members"].remove(member)

    def delete_group(self, group_id):
        for expense_id in [e.id for e in self.expenses.values() if e.group_id == group_id]:
            del self.expenses[expense_id]
        del self.groups[group_id]

    # Expenses

    def fetch_entries(self, group_id) -> List[ExpenseEntry]:
        return [entry for entry in self.expenses.values() if entry.group_id == group_id]

    def get_expense(self, expense_id):
        return self.expenses.get(expense_id)

    def create_expense(self, entry):
        expense_id = ExpenseId(next(self._ids))
        self.expenses[expense_id] = entry.with_changes(id=expense_id)
        return expense_id

    def update_expense(self, entry):
        self.expenses[entry.id] = entry

    def delete_expense(self, expense_id):
        del self.expenses[expense_id]


def make_entry(payer, amount, splits, group_id=1, entry_id=None) -> ExpenseEntry:
    """Build a ledger entry from plain values; ``splits`` is a list of (member, share)."""
    return ExpenseEntry(
        id=entry_id,
        payer=payer,
        group_id=GroupId(group_id),
        amount=Decimal(str(amount)),
        splits=tuple(Split(member, Decimal(str(share))) for member, share in splits),
    )


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def app(ledger):
    return create_app({"TESTING": True}, ledger=ledger)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def signup(app):
    """Register a user on a fresh client and return (client, user_id)."""
    phones = itertools.count(5550000001)

    def _signup(name: str):
        client = app.test_client()
        resp = client.post(
            "/api/auth/register",
            json={
                "name": name,
                "email": f"{name.lower()}@example.com",
                "phone_number": str(next(phones)),
                "password": "Secret123",
            },
        )
        assert resp.status_code == 201
        return client, resp.get_json()["_id"]

    return _signup


@pytest.fixture
def trio(signup):
    """Alice (admin), Bob and Carol in one group."""
    alice, alice_id = signup("Alice")
    bob, bob_id = signup("Bob")
    carol, carol_id = signup("Carol")
    resp = alice.post("/api/groups", json={"name": "Flat 4B", "members": [bob_id, carol_id]})
    assert resp.status_code == 201
    return {
        "group_id": resp.get_json()["_id"],
        "alice": (alice, alice_id),
        "bob": (bob, bob_id),
        "carol": (carol, carol_id),
    }
