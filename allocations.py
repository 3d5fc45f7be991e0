"""Allocation sources (CSV / JSON) and normalization into sorted, unique leaves.

The sort order produced here decides leaf indices and therefore the tree root:
the same logical allocation set must always normalize to the same list.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass

from errors import InvalidAllocationError
from log import get_logger

logger = get_logger(__name__)

WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_AMOUNT_RE = re.compile(r"^[0-9]+$")

# Leaf encoding packs the amount as uint256.
MAX_AMOUNT = 2**256 - 1

_WALLET_KEYS = ("walletAddress", "wallet_address", "wallet", "address")


@dataclass(frozen=True)
class Allocation:
    wallet_address: str
    amount: int


def is_valid_wallet(wallet) -> bool:
    return isinstance(wallet, str) and WALLET_RE.fullmatch(wallet) is not None


def normalize_wallet(wallet: str) -> str:
    return (wallet or "").strip().lower()


def parse_amount(value) -> int:
    """Parse a non-negative base-10 integer; raises ValueError otherwise."""
    # bool is an int subclass; JSON true/false is never an amount.
    if isinstance(value, bool):
        raise ValueError(f"amount must be an integer, got {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and _AMOUNT_RE.fullmatch(value.strip()):
        amount = int(value.strip())
    else:
        raise ValueError(f"amount must be a non-negative base-10 integer, got {value!r}")
    if amount < 0:
        raise ValueError(f"amount must be >= 0, got {amount}")
    if amount > MAX_AMOUNT:
        raise ValueError("amount does not fit in uint256")
    return amount


def _record_wallet(record: dict):
    for key in _WALLET_KEYS:
        if record.get(key) is not None:
            return record.get(key)
    return None


def normalize_allocations(raw) -> list[Allocation]:
    """Validate, merge duplicates (summing amounts) and sort by address.

    The list position of each returned Allocation is its leaf index.
    """
    if not raw:
        raise InvalidAllocationError("No allocations provided")

    totals: dict[str, int] = {}
    for i, record in enumerate(raw):
        if not isinstance(record, dict):
            raise InvalidAllocationError("record must be an object with walletAddress and amount", index=i)

        wallet = _record_wallet(record)
        if isinstance(wallet, str):
            wallet = wallet.strip()
        if not is_valid_wallet(wallet):
            raise InvalidAllocationError(f"invalid wallet address format: {wallet!r}", index=i)

        if record.get("amount") is None:
            raise InvalidAllocationError("missing amount", index=i)
        try:
            amount = parse_amount(record.get("amount"))
        except ValueError as e:
            raise InvalidAllocationError(str(e), index=i) from e

        wallet = wallet.lower()
        totals[wallet] = totals.get(wallet, 0) + amount

    for wallet, amount in totals.items():
        if amount > MAX_AMOUNT:
            raise InvalidAllocationError(f"merged amount for {wallet} does not fit in uint256")

    return [Allocation(wallet_address=w, amount=totals[w]) for w in sorted(totals)]


def _looks_like_header(line: str) -> bool:
    lowered = line.lower()
    return "address" in lowered or "wallet" in lowered


def parse_csv_allocations(text: str) -> list[dict]:
    """Parse ``address,amount`` lines into raw records.

    Header row is optional. Blank lines are skipped; lines missing either
    field are skipped with a warning instead of aborting the import.
    """
    lines = (text or "").strip().splitlines()
    if not lines:
        return []

    start = 1 if _looks_like_header(lines[0]) else 0
    records = []
    for lineno, line in enumerate(lines[start:], start=start + 1):
        line = line.strip()
        if not line:
            continue
        parts = [p.strip() for p in line.split(",")]
        wallet = parts[0] if parts else ""
        amount = parts[1] if len(parts) > 1 else ""
        if not wallet or not amount:
            logger.warning("allocation_line_skipped", line=lineno, content=line[:120])
            continue
        records.append({"walletAddress": wallet, "amount": amount})
    return records


def parse_json_allocations(data) -> list[dict]:
    """Accept a bare array or an object carrying an ``allocations`` array."""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise InvalidAllocationError(f"Invalid JSON: {e}") from e

    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("allocations", "data"):
            if isinstance(data.get(key), list):
                return data[key]
    raise InvalidAllocationError('Invalid JSON format. Expected array or object with "allocations" property')


def parse_allocation_source(content: str, filename: str) -> list[dict]:
    ext = os.path.splitext(filename or "")[1].lower()
    if ext == ".csv":
        return parse_csv_allocations(content)
    if ext == ".json":
        return parse_json_allocations(content)
    raise InvalidAllocationError("Unsupported file format. Use .csv or .json files")


def load_allocations_file(path: str) -> list[dict]:
    if not os.path.exists(path):
        raise InvalidAllocationError(f"File not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    return parse_allocation_source(content, path)
