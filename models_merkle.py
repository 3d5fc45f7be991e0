"""Merkle airdrop models (allocation trees, their leaves, active-tree pointer).

Amounts are uint256 values and are stored as decimal strings; they are only
ever handled as Python ints, never floats.
"""

import json
from datetime import datetime

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
)
from sqlalchemy.orm import relationship

from extensions import db
from merkle import AllocationLeaf, AllocationTree

ACTIVE_POINTER_ID = 1


class MerkleTree(db.Model):
    __tablename__ = "merkle_trees"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(String(500), nullable=False, default="")
    root = Column(String(66), nullable=False, index=True)
    total_amount = Column(String(80), nullable=False, default="0")
    total_users = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    metadata_json = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    leaves = relationship(
        "MerkleLeaf",
        back_populates="tree",
        order_by="MerkleLeaf.leaf_index",
        cascade="all, delete-orphan",
        lazy="select",
    )

    __table_args__ = (
        # At most one row may have is_active = true.
        Index(
            "uq_merkle_trees_single_active",
            "is_active",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("idx_merkle_trees_created_at", "created_at"),
    )

    @property
    def meta(self) -> dict:
        if not self.metadata_json:
            return {}
        try:
            return json.loads(self.metadata_json)
        except ValueError:
            return {}

    def to_dict(self, include_leaves: bool = False):
        out = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "root": self.root,
            "totalAmount": self.total_amount,
            "totalUsers": self.total_users,
            "isActive": bool(self.is_active),
            "version": self.version,
            "metadata": self.meta,
            "createdBy": self.created_by,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_leaves:
            out["leaves"] = [leaf.to_dict() for leaf in self.leaves]
        return out

    def to_allocation_tree(self) -> AllocationTree:
        return AllocationTree(
            name=self.name,
            description=self.description or "",
            root=self.root,
            total_amount=int(self.total_amount),
            total_users=int(self.total_users),
            leaves=[leaf.to_allocation_leaf() for leaf in self.leaves],
            is_active=bool(self.is_active),
            version=self.version,
            metadata=self.meta,
            created_by=self.created_by,
        )


class MerkleLeaf(db.Model):
    __tablename__ = "merkle_leaves"

    id = Column(Integer, primary_key=True)
    tree_id = Column(Integer, ForeignKey("merkle_trees.id", ondelete="CASCADE"), nullable=False)
    wallet_address = Column(String(42), nullable=False)
    amount = Column(String(80), nullable=False)
    leaf_index = Column(Integer, nullable=False)
    # JSON array of 0x-prefixed sibling hashes, leaf to root.
    proof_json = Column(Text, nullable=False, default="[]")

    tree = relationship("MerkleTree", back_populates="leaves")

    __table_args__ = (
        UniqueConstraint("tree_id", "wallet_address", name="uq_merkle_leaves_tree_wallet"),
        Index("idx_merkle_leaves_tree_index", "tree_id", "leaf_index"),
    )

    @property
    def proof(self) -> list:
        return json.loads(self.proof_json or "[]")

    def to_dict(self):
        return {
            "walletAddress": self.wallet_address,
            "amount": self.amount,
            "index": self.leaf_index,
            "proof": self.proof,
        }

    def to_allocation_leaf(self) -> AllocationLeaf:
        return AllocationLeaf(
            wallet_address=self.wallet_address,
            amount=int(self.amount),
            index=self.leaf_index,
            proof=self.proof,
        )


class MerkleActivePointer(db.Model):
    """Singleton row (id=1) naming the active tree.

    ``version`` is bumped on every activation; activations compare-and-swap on
    it so two concurrent activations cannot both win.
    """

    __tablename__ = "merkle_active_pointer"

    id = Column(Integer, primary_key=True)  # always 1
    tree_id = Column(Integer, ForeignKey("merkle_trees.id"), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
