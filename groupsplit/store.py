"""MySQL-backed storage for users, groups and expense entries."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .db import Database, db
from .models import ExpenseEntry, ExpenseId, Group, GroupId, MemberId, Split


USER_FIELDS = "id, name, email, phone_number"


def _profile(row: Dict[str, Any]) -> Dict[str, Any]:
    return {"_id": MemberId(row["id"]), "name": row["name"], "email": row["email"]}


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join(["%s"] * len(values))


class LedgerStore:
    def __init__(self, database: Database) -> None:
        self.db = database

    # Users

    def create_user(self, name: str, email: str, phone_number: str, password_hash: str) -> MemberId:
        user_id = self.db.execute(
            "INSERT INTO users (name, email, phone_number, password) VALUES (%s, %s, %s, %s)",
            (name, email, phone_number, password_hash),
        )
        return MemberId(user_id)

    def find_user_credentials(self, email: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            f"SELECT {USER_FIELDS}, password FROM users WHERE email=%s",
            (email,),
        )

    def user_exists(self, email: str, phone_number: str) -> bool:
        record = self.db.fetch_one(
            "SELECT id FROM users WHERE email=%s OR phone_number=%s",
            (email, phone_number),
        )
        return record is not None

    def get_user(self, user_id: MemberId) -> Optional[Dict[str, Any]]:
        row = self.db.fetch_one(f"SELECT {USER_FIELDS} FROM users WHERE id=%s", (user_id,))
        return _profile(row) if row else None

    def fetch_users(self, user_ids: Iterable[MemberId]) -> Dict[MemberId, Dict[str, Any]]:
        """Resolve many ids with one query; unknown ids are simply absent."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        rows = self.db.fetch_all(
            f"SELECT {USER_FIELDS} FROM users WHERE id IN ({_placeholders(ids)})",
            ids,
        )
        return {MemberId(row["id"]): _profile(row) for row in rows}

    def search_users(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all(
            f"""
            SELECT {USER_FIELDS}
            FROM users
            WHERE LOWER(email) LIKE %s OR phone_number=%s
            ORDER BY name
            LIMIT %s
            """,
            (f"%{query.lower()}%", query, limit),
        )
        return [dict(_profile(row), phoneNumber=row["phone_number"]) for row in rows]

    # Groups

    def _group_members(self, group_id: GroupId) -> List[MemberId]:
        rows = self.db.fetch_all(
            "SELECT user_id FROM group_members WHERE group_id=%s ORDER BY id",
            (group_id,),
        )
        return [MemberId(row["user_id"]) for row in rows]

    def _to_group(self, row: Dict[str, Any]) -> Group:
        return Group(
            id=GroupId(row["id"]),
            name=row["name"],
            description=row["description"],
            admin=MemberId(row["admin_id"]),
            members=tuple(self._group_members(row["id"])),
            created_at=row["created_at"],
        )

    def create_group(
        self, name: str, description: Optional[str], admin: MemberId, members: Iterable[MemberId] = ()
    ) -> GroupId:
        member_ids = list(dict.fromkeys([admin, *members]))
        with self.db.cursor() as cursor:
            cursor.execute(
                "INSERT INTO expense_groups (name, description, admin_id) VALUES (%s, %s, %s)",
                (name, description, admin),
            )
            group_id = cursor.lastrowid
            cursor.executemany(
                "INSERT INTO group_members (group_id, user_id) VALUES (%s, %s)",
                [(group_id, member) for member in member_ids],
            )
        return GroupId(group_id)

    def get_group(self, group_id: GroupId) -> Optional[Group]:
        row = self.db.fetch_one(
            "SELECT id, name, description, admin_id, created_at FROM expense_groups WHERE id=%s",
            (group_id,),
        )
        return self._to_group(row) if row else None

    def list_groups(self, member: MemberId) -> List[Group]:
        rows = self.db.fetch_all(
            """
            SELECT g.id, g.name, g.description, g.admin_id, g.created_at
            FROM expense_groups g
            JOIN group_members gm ON gm.group_id = g.id
            WHERE gm.user_id = %s
            ORDER BY g.created_at DESC, g.id DESC
            """,
            (member,),
        )
        return [self._to_group(row) for row in rows]

    def update_group(self, group_id: GroupId, name: str, description: Optional[str]) -> None:
        self.db.execute(
            "UPDATE expense_groups SET name=%s, description=%s WHERE id=%s",
            (name, description, group_id),
        )

    def add_member(self, group_id: GroupId, member: MemberId) -> None:
        self.db.execute(
            "INSERT INTO group_members (group_id, user_id) VALUES (%s, %s)",
            (group_id, member),
        )

    def remove_member(self, group_id: GroupId, member: MemberId) -> None:
        self.db.execute(
            "DELETE FROM group_members WHERE group_id=%s AND user_id=%s",
            (group_id, member),
        )

    def delete_group(self, group_id: GroupId) -> None:
        # Delete related rows: splits, expenses, members, then the group
        with self.db.cursor() as cursor:
            cursor.execute(
                """
                DELETE es FROM expense_splits es
                JOIN expenses e ON es.expense_id = e.id
                WHERE e.group_id=%s
                """,
                (group_id,),
            )
            cursor.execute("DELETE FROM expenses WHERE group_id=%s", (group_id,))
            cursor.execute("DELETE FROM group_members WHERE group_id=%s", (group_id,))
            cursor.execute("DELETE FROM expense_groups WHERE id=%s", (group_id,))

    # Expenses

    def _splits_for(self, expense_ids: List[int]) -> Dict[int, List[Split]]:
        splits: Dict[int, List[Split]] = {}
        if not expense_ids:
            return splits
        rows = self.db.fetch_all(
            f"""
            SELECT expense_id, user_id, share_amount
            FROM expense_splits
            WHERE expense_id IN ({_placeholders(expense_ids)})
            ORDER BY expense_id, position
            """,
            expense_ids,
        )
        for row in rows:
            splits.setdefault(row["expense_id"], []).append(
                Split(MemberId(row["user_id"]), Decimal(row["share_amount"]))
            )
        return splits

    def _to_entries(self, rows: List[Dict[str, Any]]) -> List[ExpenseEntry]:
        splits = self._splits_for([row["id"] for row in rows])
        return [
            ExpenseEntry(
                id=ExpenseId(row["id"]),
                payer=MemberId(row["paid_by"]),
                group_id=GroupId(row["group_id"]),
                amount=Decimal(row["amount"]),
                splits=tuple(splits.get(row["id"], [])),
                split_type=row["split_type"],
                category=row["category"],
                title=row["title"],
                description=row["description"],
                date=row["expense_date"],
            )
            for row in rows
        ]

    _EXPENSE_SELECT = """
        SELECT id, group_id, paid_by, title, description, amount, split_type, category, expense_date
        FROM expenses
    """

    def fetch_entries(self, group_id: GroupId) -> List[ExpenseEntry]:
        """All entries of a group, in the order they were recorded."""
        rows = self.db.fetch_all(self._EXPENSE_SELECT + " WHERE group_id=%s ORDER BY id", (group_id,))
        return self._to_entries(rows)

    def get_expense(self, expense_id: ExpenseId) -> Optional[ExpenseEntry]:
        rows = self.db.fetch_all(self._EXPENSE_SELECT + " WHERE id=%s", (expense_id,))
        entries = self._to_entries(rows)
        return entries[0] if entries else None

    @staticmethod
    def _insert_splits(cursor, expense_id: int, splits: Sequence[Split]) -> None:
        if not splits:
            return
        cursor.executemany(
            "INSERT INTO expense_splits (expense_id, user_id, share_amount, position) VALUES (%s, %s, %s, %s)",
            [(expense_id, split.member, str(split.amount), position) for position, split in enumerate(splits)],
        )

    # Each write below runs in a single transaction: the expense row and its
    # splits land together or not at all.

    def create_expense(self, entry: ExpenseEntry) -> ExpenseId:
        with self.db.cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO expenses
                    (group_id, paid_by, title, description, amount, split_type, category, expense_date)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.group_id,
                    entry.payer,
                    entry.title,
                    entry.description,
                    str(entry.amount),
                    entry.split_type,
                    entry.category,
                    entry.date,
                ),
            )
            expense_id = cursor.lastrowid
            self._insert_splits(cursor, expense_id, entry.splits)
        return ExpenseId(expense_id)

    def update_expense(self, entry: ExpenseEntry) -> None:
        with self.db.cursor() as cursor:
            cursor.execute(
                """
                UPDATE expenses
                SET title=%s, description=%s, amount=%s, split_type=%s, category=%s, expense_date=%s
                WHERE id=%s
                """,
                (
                    entry.title,
                    entry.description,
                    str(entry.amount),
                    entry.split_type,
                    entry.category,
                    entry.date,
                    entry.id,
                ),
            )
            cursor.execute("DELETE FROM expense_splits WHERE expense_id=%s", (entry.id,))
            self._insert_splits(cursor, entry.id, entry.splits)

    def delete_expense(self, expense_id: ExpenseId) -> None:
        with self.db.cursor() as cursor:
            cursor.execute("DELETE FROM expense_splits WHERE expense_id=%s", (expense_id,))
            cursor.execute("DELETE FROM expenses WHERE id=%s", (expense_id,))


store = LedgerStore(db)
