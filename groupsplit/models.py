"""Domain records shared by the ledger, the balance calculator and the API."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, Mapping, NewType, Optional, Tuple

# Identifiers are compared by value; nothing downstream coerces them to str.
MemberId = NewType("MemberId", int)
GroupId = NewType("GroupId", int)
ExpenseId = NewType("ExpenseId", int)

SPLIT_TYPES = ("equal", "exact", "percentage")
CATEGORIES = (
    "food",
    "transport",
    "accommodation",
    "entertainment",
    "utilities",
    "shopping",
    "other",
)
DEFAULT_SPLIT_TYPE = "equal"
DEFAULT_CATEGORY = "other"


def placeholder_profile(member: MemberId) -> Dict[str, Any]:
    """Profile used when a member id no longer resolves to a user."""
    return {"_id": member, "name": None, "email": None}


def profile_for(member: MemberId, profiles: Mapping[MemberId, Dict[str, Any]]) -> Dict[str, Any]:
    return profiles.get(member) or placeholder_profile(member)


@dataclass(frozen=True)
class Split:
    member: MemberId
    amount: Decimal


@dataclass(frozen=True)
class ExpenseEntry:
    """A single ledger entry: ``payer`` fronted ``amount``, shared out as ``splits``.

    ``split_type`` only records how the splits were derived; the stored
    ``splits`` amounts are what every consumer reads.
    """

    id: Optional[ExpenseId]
    payer: MemberId
    group_id: GroupId
    amount: Decimal
    splits: Tuple[Split, ...]
    split_type: str = DEFAULT_SPLIT_TYPE
    category: str = DEFAULT_CATEGORY
    title: str = ""
    description: Optional[str] = None
    date: Optional[datetime] = None

    def split_total(self) -> Decimal:
        return sum((split.amount for split in self.splits), Decimal("0"))

    def participants(self) -> Iterator[MemberId]:
        yield self.payer
        for split in self.splits:
            yield split.member

    def with_changes(self, **changes: Any) -> "ExpenseEntry":
        return replace(self, **changes)

    def to_dict(self, profiles: Mapping[MemberId, Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "group": self.group_id,
            "title": self.title,
            "description": self.description,
            "amount": float(self.amount),
            "paidBy": profile_for(self.payer, profiles),
            "splitType": self.split_type,
            "splits": [
                {"user": profile_for(split.member, profiles), "amount": float(split.amount)}
                for split in self.splits
            ],
            "category": self.category,
            "date": self.date.isoformat() if self.date else None,
        }


@dataclass(frozen=True)
class Group:
    id: GroupId
    name: str
    admin: MemberId
    members: Tuple[MemberId, ...]
    description: Optional[str] = None
    created_at: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.admin not in self.members:
            raise ValueError("group admin must be a member")

    def is_member(self, member: MemberId) -> bool:
        return member in self.members

    def is_admin(self, member: MemberId) -> bool:
        return self.admin == member

    def to_dict(self, profiles: Mapping[MemberId, Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "name": self.name,
            "description": self.description,
            "admin": profile_for(self.admin, profiles),
            "members": [profile_for(member, profiles) for member in self.members],
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }