"""Merkle tree construction and proof verification for airdrop allocations.

Encoding (part of the on-chain contract, do not change):

- leaf   = keccak256(address[20] || uint256_be(amount)[32])
           i.e. Solidity ``keccak256(abi.encodePacked(account, amount))``
- parent = keccak256(min(a, b) || max(a, b)), comparing raw bytes
           (sorted pairs, as OpenZeppelin ``MerkleProof.verify`` expects)
- an unpaired node at the end of a level is promoted unchanged to the next
  level and adds nothing to the proofs at that level

Tree data (AllocationTree / AllocationLeaf) is kept separate from storage so
the builder and verifier can be used without a database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from eth_utils import keccak

from allocations import (
    MAX_AMOUNT,
    Allocation,
    is_valid_wallet,
    normalize_allocations,
    normalize_wallet,
    parse_amount,
)
from log import get_logger

logger = get_logger(__name__)

HASH_LENGTH = 32


def to_hex(value: bytes) -> str:
    return "0x" + value.hex()


def from_hex(value) -> bytes:
    """Decode a 0x-prefixed 32-byte hash. Raises ValueError on anything else."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str) and value.startswith("0x"):
        raw = bytes.fromhex(value[2:])
    else:
        raise ValueError(f"hash must be 0x-prefixed hex, got {value!r}")
    if len(raw) != HASH_LENGTH:
        raise ValueError(f"hash must be {HASH_LENGTH} bytes, got {len(raw)}")
    return raw


def leaf_hash(wallet_address: str, amount: int) -> bytes:
    if not is_valid_wallet(wallet_address):
        raise ValueError(f"invalid wallet address: {wallet_address!r}")
    if amount < 0 or amount > MAX_AMOUNT:
        raise ValueError("amount out of uint256 range")
    return keccak(bytes.fromhex(wallet_address[2:]) + amount.to_bytes(32, "big"))


def hash_pair(a: bytes, b: bytes) -> bytes:
    if a <= b:
        return keccak(a + b)
    return keccak(b + a)


class MerkleTree:
    """Binary Merkle tree over an ordered list of leaf hashes."""

    def __init__(self, leaves: list[bytes]):
        if not leaves:
            raise ValueError("Cannot build a merkle tree without leaves")
        self.layers: list[list[bytes]] = [list(leaves)]
        while len(self.layers[-1]) > 1:
            level = self.layers[-1]
            parents = [hash_pair(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
            if len(level) % 2:
                parents.append(level[-1])
            self.layers.append(parents)

    def __len__(self) -> int:
        return len(self.layers[0])

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    @property
    def hex_root(self) -> str:
        return to_hex(self.root)

    def proof(self, index: int) -> list[bytes]:
        if not 0 <= index < len(self):
            raise IndexError(f"leaf index {index} out of range")
        proof = []
        for level in self.layers[:-1]:
            sibling = index ^ 1
            if sibling < len(level):
                proof.append(level[sibling])
            index //= 2
        return proof

    def hex_proof(self, index: int) -> list[str]:
        return [to_hex(p) for p in self.proof(index)]


def process_proof(leaf: bytes, proof: list[bytes]) -> bytes:
    computed = leaf
    for sibling in proof:
        computed = hash_pair(computed, sibling)
    return computed


def verify_proof(wallet_address: str, amount, proof, root) -> bool:
    """True iff (wallet, amount) with ``proof`` folds up to exactly ``root``.

    Malformed input (bad address, amount, hash encoding) is a failed proof,
    never an exception.
    """
    try:
        wallet = normalize_wallet(wallet_address)
        leaf = leaf_hash(wallet, parse_amount(amount))
        siblings = [from_hex(p) for p in (proof or [])]
        expected = from_hex(root)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug("merkle_proof_verify_failed", wallet=wallet_address, error=str(e))
        return False
    return process_proof(leaf, siblings) == expected


@dataclass
class AllocationLeaf:
    wallet_address: str
    amount: int
    index: int
    proof: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "walletAddress": self.wallet_address,
            "amount": str(self.amount),
            "index": self.index,
            "proof": list(self.proof),
        }


@dataclass
class AllocationTree:
    name: str
    description: str
    root: str
    total_amount: int
    total_users: int
    leaves: list[AllocationLeaf]
    is_active: bool = False
    version: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None

    def find_leaf(self, wallet_address: str) -> Optional[AllocationLeaf]:
        wallet = normalize_wallet(wallet_address)
        for leaf in self.leaves:
            if leaf.wallet_address.lower() == wallet:
                return leaf
        return None


@dataclass
class IntegrityResult:
    valid: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"valid": self.valid}
        if self.error:
            out["error"] = self.error
        return out


def build_leaves(allocations: list[Allocation]) -> tuple[MerkleTree, list[AllocationLeaf]]:
    hashes = [leaf_hash(a.wallet_address, a.amount) for a in allocations]
    tree = MerkleTree(hashes)
    leaves = [
        AllocationLeaf(wallet_address=a.wallet_address, amount=a.amount, index=i, proof=tree.hex_proof(i))
        for i, a in enumerate(allocations)
    ]
    return tree, leaves


def build_allocation_tree(
    name: str,
    description: str,
    allocations,
    created_by: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AllocationTree:
    """Normalize raw allocation records and build the full tree with proofs."""
    normalized = normalize_allocations(allocations)
    tree, leaves = build_leaves(normalized)

    md = {
        "snapshotDate": datetime.now(timezone.utc).isoformat(),
        "criteria": description or "",
        "notes": f"Generated from {len(allocations)} original allocations, {len(normalized)} unique addresses",
    }
    md.update(metadata or {})

    return AllocationTree(
        name=name,
        description=description or "",
        root=tree.hex_root,
        total_amount=sum(a.amount for a in normalized),
        total_users=len(leaves),
        leaves=leaves,
        metadata=md,
        created_by=created_by,
    )


def validate_integrity(tree: AllocationTree) -> IntegrityResult:
    """Structural and cryptographic checks that gate activation."""
    if not tree.leaves:
        return IntegrityResult(False, "Tree has no leaves")

    indices = sorted(leaf.index for leaf in tree.leaves)
    if len(set(indices)) != len(indices):
        return IntegrityResult(False, "Duplicate indices found")
    if indices != list(range(len(indices))):
        return IntegrityResult(False, "Non-sequential indices")

    if tree.total_users != len(tree.leaves):
        return IntegrityResult(False, "Total users mismatch")

    if sum(leaf.amount for leaf in tree.leaves) != tree.total_amount:
        return IntegrityResult(False, "Total amount mismatch")

    wallets = [leaf.wallet_address.lower() for leaf in tree.leaves]
    if len(set(wallets)) != len(wallets):
        return IntegrityResult(False, "Duplicate wallet addresses found")

    ordered = sorted(tree.leaves, key=lambda leaf: leaf.index)
    try:
        rebuilt = MerkleTree([leaf_hash(leaf.wallet_address.lower(), leaf.amount) for leaf in ordered])
    except ValueError as e:
        return IntegrityResult(False, f"Invalid leaf data: {e}")
    try:
        if rebuilt.root != from_hex(tree.root):
            return IntegrityResult(False, "Merkle root mismatch when regenerating tree")
    except ValueError:
        return IntegrityResult(False, "Invalid merkle root format")

    for leaf in ordered:
        if not verify_proof(leaf.wallet_address, leaf.amount, leaf.proof, tree.root):
            return IntegrityResult(False, f"Invalid proof for address {leaf.wallet_address}")

    return IntegrityResult(True)


def get_proof_for_wallet(tree: AllocationTree, wallet_address: str) -> Optional[dict]:
    leaf = tree.find_leaf(wallet_address)
    if leaf is None:
        return None
    return {"amount": str(leaf.amount), "index": leaf.index, "proof": list(leaf.proof)}


def is_wallet_eligible(tree: AllocationTree, wallet_address: str) -> bool:
    return tree.find_leaf(wallet_address) is not None


def get_wallet_allocation(tree: AllocationTree, wallet_address: str) -> int:
    leaf = tree.find_leaf(wallet_address)
    return leaf.amount if leaf else 0
