"""Net balance computation for a group's ledger.

A member's balance is everything they fronted minus every share assigned to
them, across all entries of the group. Positive means the group owes them,
negative means they owe the group. Only net positions are reported; no
pairwise transfers are derived.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from .models import ExpenseEntry, MemberId, profile_for

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 10.005 as 10.005 instead of its binary float expansion
    return Decimal(str(value))


def round_half_up(value: Any) -> Decimal:
    rounded = to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    # Collapse -0.00 so it serialises as 0
    return rounded if rounded else ZERO


def net_positions(entries: Iterable[ExpenseEntry]) -> Dict[MemberId, Decimal]:
    """Unrounded net position per member, keyed in order of first appearance."""
    balances: Dict[MemberId, Decimal] = {}
    for entry in entries:
        balances[entry.payer] = balances.get(entry.payer, ZERO) + to_decimal(entry.amount)
        for split in entry.splits:
            balances[split.member] = balances.get(split.member, ZERO) - to_decimal(split.amount)
    return balances


@dataclass(frozen=True)
class BalanceLine:
    member: MemberId
    balance: Decimal

    def to_dict(self, profiles: Mapping[MemberId, Dict[str, Any]]) -> Dict[str, Any]:
        return {"user": profile_for(self.member, profiles), "balance": float(self.balance)}


@dataclass(frozen=True)
class BalanceReport:
    balances: Mapping[MemberId, Decimal]
    owed: Tuple[BalanceLine, ...]
    owes: Tuple[BalanceLine, ...]
    settled: Tuple[BalanceLine, ...]

    @property
    def members(self) -> List[MemberId]:
        return list(self.balances)

    def is_empty(self) -> bool:
        return not self.balances

    def to_dict(self, profiles: Mapping[MemberId, Dict[str, Any]]) -> Dict[str, Any]:
        """Serialise with display profiles; unresolved members get a placeholder."""
        return {
            "owes": [line.to_dict(profiles) for line in self.owes],
            "owed": [line.to_dict(profiles) for line in self.owed],
            "settled": [line.to_dict(profiles) for line in self.settled],
        }


def compute_balances(entries: Iterable[ExpenseEntry]) -> BalanceReport:
    """Reduce ledger entries into a partitioned, rounded balance report.

    Every balance is rounded half-up to cents once, and the rounded value
    decides the bucket, so a raw 0.004 lands in ``settled``.
    """
    rounded = {member: round_half_up(amount) for member, amount in net_positions(entries).items()}

    owed: List[BalanceLine] = []
    owes: List[BalanceLine] = []
    settled: List[BalanceLine] = []
    for member, balance in rounded.items():
        line = BalanceLine(member, balance)
        if balance > 0:
            owed.append(line)
        elif balance < 0:
            owes.append(line)
        else:
            settled.append(line)

    return BalanceReport(
        balances=MappingProxyType(rounded),
        owed=tuple(owed),
        owes=tuple(owes),
        settled=tuple(settled),
    )


def group_balance_report(store, group_id) -> Dict[str, Any]:
    """Fetch a group's ledger, reduce it, then resolve all profiles in one lookup."""
    entries = store.fetch_entries(group_id)
    report = compute_balances(entries)
    logger.info("Computed balances for group %s from %d entries", group_id, len(entries))
    profiles = store.fetch_users(report.members) if not report.is_empty() else {}
    return report.to_dict(profiles)
