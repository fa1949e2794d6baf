import copy
import itertools
from contextlib import contextmanager
from decimal import Decimal

import pytest

from groupsplit.models import ExpenseId, GroupId, MemberId
from groupsplit.store import LedgerStore

from .conftest import make_entry

ALICE, BOB, CAROL = MemberId(1), MemberId(2), MemberId(3)


class TableCursor:
    """Applies the store's write statements to a set of in-memory tables."""

    def __init__(self, database, tables):
        self.database = database
        self.tables = tables
        self.lastrowid = None

    def execute(self, query, params=()):
        statement = " ".join(query.split())
        if statement.startswith("INSERT INTO expenses"):
            self.lastrowid = next(self.database.ids)
            self.tables["expenses"][self.lastrowid] = {"title": params[2], "amount": params[4]}
        elif statement.startswith("UPDATE expenses"):
            self.tables["expenses"][params[6]].update(title=params[0], amount=params[2])
        elif statement.startswith("DELETE FROM expense_splits WHERE expense_id"):
            self.tables["expense_splits"] = [row for row in self.tables["expense_splits"] if row[0] != params[0]]
        elif statement.startswith("DELETE FROM expenses WHERE id"):
            del self.tables["expenses"][params[0]]
        elif statement.startswith("INSERT INTO expense_groups"):
            self.lastrowid = next(self.database.ids)
            self.tables["expense_groups"][self.lastrowid] = {"name": params[0]}
        else:
            raise AssertionError(f"unexpected statement: {statement}")

    def executemany(self, query, rows):
        table = query.split()[2]
        if table == self.database.failing_table:
            raise RuntimeError("Lost connection to MySQL server during query")
        self.tables[table].extend(rows)


class TableDatabase:
    """Database double whose cursor() blocks commit all their writes or none."""

    def __init__(self):
        self.tables = {"expense_groups": {}, "group_members": [], "expenses": {}, "expense_splits": []}
        self.failing_table = None
        self.ids = itertools.count(1)

    @contextmanager
    def cursor(self, dictionary=True):
        staged = copy.deepcopy(self.tables)
        yield TableCursor(self, staged)
        self.tables = staged

    def splits_of(self, expense_id):
        return [(row[1], row[2]) for row in self.tables["expense_splits"] if row[0] == expense_id]


@pytest.fixture
def database():
    return TableDatabase()


@pytest.fixture
def ledger_store(database):
    return LedgerStore(database)


def test_create_expense_writes_the_entry_and_its_splits(database, ledger_store):
    entry = make_entry(ALICE, "30.00", [(ALICE, "10.00"), (BOB, "10.00"), (CAROL, "10.00")])

    expense_id = ledger_store.create_expense(entry)

    assert database.tables["expenses"][expense_id]["amount"] == "30.00"
    assert database.splits_of(expense_id) == [(ALICE, "10.00"), (BOB, "10.00"), (CAROL, "10.00")]
    assert [row[3] for row in database.tables["expense_splits"]] == [0, 1, 2]


def test_create_expense_is_all_or_nothing(database, ledger_store):
    database.failing_table = "expense_splits"

    with pytest.raises(RuntimeError):
        ledger_store.create_expense(make_entry(ALICE, "20.00", [(ALICE, "10.00"), (BOB, "10.00")]))

    assert database.tables["expenses"] == {}
    assert database.tables["expense_splits"] == []


def test_failed_split_insert_keeps_the_previous_splits(database, ledger_store):
    expense_id = ledger_store.create_expense(make_entry(ALICE, "20.00", [(ALICE, "10.00"), (BOB, "10.00")]))
    database.failing_table = "expense_splits"
    changed = make_entry(ALICE, "30.00", [(ALICE, "15.00"), (CAROL, "15.00")], entry_id=ExpenseId(expense_id))

    with pytest.raises(RuntimeError):
        ledger_store.update_expense(changed)

    assert database.tables["expenses"][expense_id]["amount"] == "20.00"
    assert database.splits_of(expense_id) == [(ALICE, "10.00"), (BOB, "10.00")]


def test_update_expense_replaces_the_splits(database, ledger_store):
    expense_id = ledger_store.create_expense(make_entry(ALICE, "20.00", [(ALICE, "10.00"), (BOB, "10.00")]))
    changed = make_entry(ALICE, "30.00", [(ALICE, "15.00"), (CAROL, "15.00")], entry_id=ExpenseId(expense_id))

    ledger_store.update_expense(changed)

    assert database.tables["expenses"][expense_id]["amount"] == "30.00"
    assert database.splits_of(expense_id) == [(ALICE, "15.00"), (CAROL, "15.00")]


def test_delete_expense_removes_the_entry_and_its_splits(database, ledger_store):
    kept = ledger_store.create_expense(make_entry(BOB, "4.00", [(BOB, "2.00"), (CAROL, "2.00")]))
    expense_id = ledger_store.create_expense(make_entry(ALICE, "20.00", [(ALICE, "10.00"), (BOB, "10.00")]))

    ledger_store.delete_expense(ExpenseId(expense_id))

    assert list(database.tables["expenses"]) == [kept]
    assert database.splits_of(expense_id) == []
    assert database.splits_of(kept) == [(BOB, "2.00"), (CAROL, "2.00")]


def test_create_group_is_all_or_nothing(database, ledger_store):
    database.failing_table = "group_members"

    with pytest.raises(RuntimeError):
        ledger_store.create_group("Trip", None, ALICE, [BOB])

    assert database.tables["expense_groups"] == {}

    database.failing_table = None
    group_id = ledger_store.create_group("Trip", None, ALICE, [BOB, ALICE])

    assert isinstance(group_id, int)
    assert database.tables["group_members"] == [(GroupId(group_id), ALICE), (GroupId(group_id), BOB)]


def test_amounts_are_written_as_exact_decimals(database, ledger_store):
    expense_id = ledger_store.create_expense(make_entry(ALICE, Decimal("0.07"), [(ALICE, "0.07")]))

    assert database.tables["expenses"][expense_id]["amount"] == "0.07"
