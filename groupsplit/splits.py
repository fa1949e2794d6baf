from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import config
from .models import SPLIT_TYPES, MemberId, Split

HUNDRED = Decimal("100")
CENT = Decimal("0.01")


class SplitValidationError(ValueError):
    """Raised when an entry's splits do not add up to its amount."""


def to_amount(value: Any, error: str = "invalid_amount") -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValueError(error)
    if not isinstance(value, (int, float, str, Decimal)):
        raise ValueError(error)
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(error) from None
    if not amount.is_finite():
        raise ValueError(error)
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_member_id(value: Any) -> MemberId:
    if isinstance(value, bool):
        raise ValueError("invalid_split_payload")
    try:
        return MemberId(int(value))
    except (TypeError, ValueError):
        raise ValueError("invalid_split_payload") from None


def _spread(amount: Decimal, portions: Sequence[Tuple[MemberId, Decimal]]) -> List[Split]:
    # Every share is floored to cents; the leftover cents go one each to the first members.
    if amount < 0:
        raise ValueError("invalid_amount")
    floors = [portion.quantize(CENT, rounding=ROUND_DOWN) for _, portion in portions]
    leftover = int((amount - sum(floors, Decimal("0"))) / CENT)
    return [
        Split(member, share + CENT if index < leftover else share)
        for index, ((member, _), share) in enumerate(zip(portions, floors))
    ]


def equal_shares(amount: Decimal, members: Sequence[MemberId]) -> List[Split]:
    count = len(members)
    if count == 0:
        raise ValueError("invalid_split_members")
    per_person = amount / count
    return _spread(amount, [(member, per_person) for member in members])


def exact_shares(payload: Iterable[Dict[str, Any]]) -> List[Split]:
    splits: List[Split] = []
    for item in payload:
        if not isinstance(item, dict) or "user_id" not in item:
            raise ValueError("invalid_split_payload")
        share_value = item.get("amount", item.get("share_amount"))
        splits.append(Split(to_member_id(item["user_id"]), to_amount(share_value, "invalid_share_amount")))
    return splits


def percentage_shares(amount: Decimal, payload: Iterable[Dict[str, Any]]) -> List[Split]:
    portions: List[Tuple[MemberId, Decimal]] = []
    total_percentage = Decimal("0")
    for item in payload:
        if not isinstance(item, dict) or "user_id" not in item:
            raise ValueError("invalid_split_payload")
        percentage = to_amount(item.get("percentage"), "invalid_share_amount")
        if percentage < 0:
            raise ValueError("invalid_share_amount")
        total_percentage += percentage
        portions.append((to_member_id(item["user_id"]), percentage))

    if not portions:
        raise ValueError("invalid_split_payload")
    if abs(total_percentage - HUNDRED) > config.SPLIT_TOLERANCE:
        raise ValueError("invalid_percentage_total")
    # Scale by the actual total so the portions add up to the amount exactly
    return _spread(amount, [(member, amount * percentage / total_percentage) for member, percentage in portions])


def check_split_total(amount: Decimal, splits: Sequence[Split], tolerance: Optional[Decimal] = None) -> None:
    tolerance = config.SPLIT_TOLERANCE if tolerance is None else tolerance
    total = sum((split.amount for split in splits), Decimal("0"))
    if abs(total - amount) > tolerance:
        raise SplitValidationError("share_total_mismatch")


def check_shares(amount: Decimal, splits: Sequence[Split]) -> None:
    """Shares must be non-negative and add up to the amount."""
    if any(split.amount < 0 for split in splits):
        raise ValueError("invalid_share_amount")
    check_split_total(amount, splits)


def validate_splits(amount: Decimal, splits: Sequence[Split], group_members: Iterable[MemberId]) -> None:
    """Check membership, uniqueness, sign and the sum-to-amount rule."""
    if not splits:
        raise ValueError("invalid_split_payload")
    members = set(group_members)
    seen = set()
    for split in splits:
        if split.amount < 0:
            raise ValueError("invalid_share_amount")
        if split.member in seen:
            raise ValueError("duplicate_split_member")
        if split.member not in members:
            raise ValueError("invalid_split_members")
        seen.add(split.member)
    check_split_total(amount, splits)


def build_splits(
    split_type: str,
    amount: Decimal,
    group_members: Sequence[MemberId],
    splits_payload: Optional[List[Dict[str, Any]]] = None,
    split_among: Optional[List[Any]] = None,
) -> Tuple[Split, ...]:
    """Materialise the per-member share amounts for an expense."""
    if split_type not in SPLIT_TYPES:
        raise ValueError("invalid_split_type")
    for given in (splits_payload, split_among):
        if given is not None and not isinstance(given, list):
            raise ValueError("invalid_split_payload")

    if split_type == "equal":
        if splits_payload:
            # Client already worked the shares out
            splits = exact_shares(splits_payload)
        else:
            members = [to_member_id(m) for m in split_among] if split_among else list(group_members)
            if len(set(members)) != len(members):
                raise ValueError("duplicate_split_member")
            splits = equal_shares(amount, members)
    elif split_type == "exact":
        if not splits_payload:
            raise ValueError("invalid_split_payload")
        splits = exact_shares(splits_payload)
    else:
        if not splits_payload:
            raise ValueError("invalid_split_payload")
        splits = percentage_shares(amount, splits_payload)

    validate_splits(amount, splits, group_members)
    return tuple(splits)
