"""Allocation tree repository: persistence, activation and eligibility lookups.

Trees are immutable once built. A correction is a new tree that gets
activated and supersedes the old one. Exactly one tree (or none, before the
first activation) is active; activation swaps the singleton pointer row with a
compare-and-swap on its version and flips ``is_active`` in the same
transaction.

Active-tree lookups always read the pointer row; cached summaries are keyed
by pointer version, so an activation in one worker is seen by every other
worker on its next lookup.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from allocations import is_valid_wallet, normalize_wallet
from cache import BaseCache, NullCache
from errors import (
    ActivationConflictError,
    DuplicateNameError,
    IntegrityError,
    InvalidNameError,
    TreeNotFoundError,
)
from extensions import db
from log import get_logger
from merkle import (
    AllocationTree,
    IntegrityResult,
    build_allocation_tree,
    get_proof_for_wallet as _tree_proof_for_wallet,
    validate_integrity,
    verify_proof,
)
from models_merkle import ACTIVE_POINTER_ID, MerkleActivePointer, MerkleLeaf, MerkleTree

logger = get_logger(__name__)

ACTIVE_CACHE_KEY = "active"

# Postgres serialization failure, deadlock, lock not available.
_LOCK_CONTENTION_PGCODES = {"40001", "40P01", "55P03"}


def _is_lock_contention(e: OperationalError) -> bool:
    """A competing writer held the lock; the transaction was rolled back untouched."""
    if getattr(e.orig, "pgcode", None) in _LOCK_CONTENTION_PGCODES:
        return True
    # SQLite does not wait on a RESERVED lock another writer holds.
    return "database is locked" in str(e.orig)


class MerkleTreeRepository:
    def __init__(self, session=None, cache: Optional[BaseCache] = None):
        self._session = session
        self.cache = cache if cache is not None else NullCache()

    @property
    def session(self):
        # Resolved per call so the Flask-SQLAlchemy scoped session follows the app context.
        return self._session if self._session is not None else db.session

    # ---------- create / read ----------

    def create(self, name: str, description: str, allocations, created_by: Optional[str], metadata: Optional[dict] = None) -> MerkleTree:
        """Build a tree from raw allocation records and persist it inactive."""
        name = name.strip() if isinstance(name, str) else ""
        if not name:
            raise InvalidNameError("Name is required")
        if self.session.query(MerkleTree.id).filter(MerkleTree.name == name).first():
            raise DuplicateNameError(name)

        data = build_allocation_tree(name, description, allocations, created_by=created_by, metadata=metadata)

        now = datetime.utcnow()
        tree = MerkleTree(
            name=data.name,
            description=data.description,
            root=data.root,
            total_amount=str(data.total_amount),
            total_users=data.total_users,
            is_active=False,
            version=data.version,
            metadata_json=json.dumps(data.metadata, separators=(",", ":"), ensure_ascii=False),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        tree.leaves = [
            MerkleLeaf(
                wallet_address=leaf.wallet_address,
                amount=str(leaf.amount),
                leaf_index=leaf.index,
                proof_json=json.dumps(leaf.proof, separators=(",", ":")),
            )
            for leaf in data.leaves
        ]
        self.session.add(tree)
        try:
            self.session.commit()
        except DBIntegrityError as e:
            # Lost a race on the unique name.
            self.session.rollback()
            raise DuplicateNameError(name) from e
        except SQLAlchemyError:
            self.session.rollback()
            raise

        logger.info(
            "merkle_tree_created",
            tree_id=tree.id,
            name=tree.name,
            root=tree.root,
            total_users=tree.total_users,
            total_amount=tree.total_amount,
            created_by=created_by,
        )
        return tree

    def get(self, tree_id) -> Optional[MerkleTree]:
        return self.session.get(MerkleTree, tree_id)

    def get_or_404(self, tree_id) -> MerkleTree:
        tree = self.get(tree_id)
        if tree is None:
            raise TreeNotFoundError(tree_id)
        return tree

    def list_trees(self, page: int = 1, limit: int = 10):
        page = max(1, int(page))
        limit = max(1, min(100, int(limit)))
        q = self.session.query(MerkleTree).order_by(MerkleTree.created_at.desc(), MerkleTree.id.desc())
        total = self.session.query(func.count(MerkleTree.id)).scalar() or 0
        trees = q.offset((page - 1) * limit).limit(limit).all()
        return trees, total

    def load(self, tree_id) -> AllocationTree:
        return self.get_or_404(tree_id).to_allocation_tree()

    # ---------- validation / activation ----------

    def validate_integrity(self, tree_id) -> IntegrityResult:
        return validate_integrity(self.load(tree_id))

    def activate(self, tree_id) -> MerkleTree:
        tree = self.get_or_404(tree_id)

        result = validate_integrity(tree.to_allocation_tree())
        if not result.valid:
            logger.warning("merkle_tree_activation_rejected", tree_id=tree.id, name=tree.name, error=result.error)
            raise IntegrityError(f"Cannot activate invalid tree: {result.error}")

        pointer = self._get_pointer()
        previous_version = pointer.version
        self._swap_active(tree.id, expected_version=previous_version)
        self.cache.delete(f"{ACTIVE_CACHE_KEY}:{previous_version}")

        tree = self.get_or_404(tree_id)
        logger.info(
            "merkle_tree_activated",
            tree_id=tree.id,
            name=tree.name,
            root=tree.root,
            total_users=tree.total_users,
            total_amount=tree.total_amount,
        )
        return tree

    def _get_pointer(self) -> MerkleActivePointer:
        pointer = self.session.get(MerkleActivePointer, ACTIVE_POINTER_ID, populate_existing=True)
        if pointer is not None:
            return pointer
        self.session.add(MerkleActivePointer(id=ACTIVE_POINTER_ID, tree_id=None, version=0, updated_at=datetime.utcnow()))
        try:
            self.session.commit()
        except DBIntegrityError:
            # Another worker created it first.
            self.session.rollback()
        return self.session.get(MerkleActivePointer, ACTIVE_POINTER_ID)

    def _swap_active(self, tree_id: int, expected_version: int) -> None:
        now = datetime.utcnow()
        try:
            res = self.session.execute(
                update(MerkleActivePointer)
                .where(MerkleActivePointer.id == ACTIVE_POINTER_ID, MerkleActivePointer.version == expected_version)
                .values(tree_id=tree_id, version=expected_version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                self.session.rollback()
                logger.warning("merkle_tree_activation_conflict", tree_id=tree_id, expected_version=expected_version)
                raise ActivationConflictError()

            # Deactivate first: the partial unique index allows a single active row.
            self.session.execute(
                update(MerkleTree)
                .where(MerkleTree.id != tree_id, MerkleTree.is_active.is_(True))
                .values(is_active=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.session.execute(
                update(MerkleTree)
                .where(MerkleTree.id == tree_id)
                .values(is_active=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except DBIntegrityError as e:
            self.session.rollback()
            raise ActivationConflictError() from e
        except OperationalError as e:
            self.session.rollback()
            if not _is_lock_contention(e):
                raise
            logger.warning("merkle_tree_activation_conflict", tree_id=tree_id, expected_version=expected_version, error=str(e.orig))
            raise ActivationConflictError() from e
        except SQLAlchemyError:
            self.session.rollback()
            raise
        # Bulk updates bypass the identity map.
        self.session.expire_all()

    # ---------- active tree lookups ----------

    def get_active_tree(self) -> Optional[MerkleTree]:
        return self.session.query(MerkleTree).filter(MerkleTree.is_active.is_(True)).first()

    def _active_state(self):
        """(tree_id, version) of the active pointer read from the database, or None."""
        row = self.session.execute(
            select(MerkleActivePointer.tree_id, MerkleActivePointer.version).where(
                MerkleActivePointer.id == ACTIVE_POINTER_ID
            )
        ).first()
        if row is None or row.tree_id is None:
            return None
        return row

    def get_active_summary(self) -> Optional[dict]:
        # The pointer is always read from the database so every worker sees an
        # activation immediately; only the summary body is cached, per pointer version.
        state = self._active_state()
        if state is None:
            return None

        key = f"{ACTIVE_CACHE_KEY}:{state.version}"
        cached = self.cache.get(key)
        if cached is not None:
            return dict(cached)

        tree = self.get(state.tree_id)
        if tree is None:
            return None
        summary = {
            "id": tree.id,
            "name": tree.name,
            "root": tree.root,
            "totalAmount": tree.total_amount,
            "totalUsers": tree.total_users,
            "version": tree.version,
            "activation": state.version,
        }
        self.cache.set(key, dict(summary))
        return summary

    def get_proof_for_wallet(self, tree, wallet_address: str) -> Optional[dict]:
        """Leaf amount/index/proof for ``wallet_address`` in ``tree``, or None."""
        if isinstance(tree, AllocationTree):
            return _tree_proof_for_wallet(tree, wallet_address)

        wallet = normalize_wallet(wallet_address)
        if tree is None or not is_valid_wallet(wallet):
            return None
        leaf = (
            self.session.query(MerkleLeaf)
            .filter(MerkleLeaf.tree_id == tree.id, MerkleLeaf.wallet_address == wallet)
            .first()
        )
        if leaf is None:
            return None
        return {"amount": leaf.amount, "index": leaf.leaf_index, "proof": leaf.proof}

    def get_active_proof(self, wallet_address: str) -> Optional[dict]:
        summary = self.get_active_summary()
        if summary is None:
            return None
        wallet = normalize_wallet(wallet_address)
        if not is_valid_wallet(wallet):
            return None

        # Proofs of a built tree never change, so entries keyed by tree id stay valid.
        key = f"proof:{summary['id']}:{wallet}"
        cached = self.cache.get(key)
        if cached is not None:
            return {**cached, "proof": list(cached["proof"])}

        tree = self.get(summary["id"])
        proof = self.get_proof_for_wallet(tree, wallet)
        if proof is not None:
            proof["root"] = summary["root"]
            self.cache.set(key, {**proof, "proof": list(proof["proof"])})
        return proof

    def is_eligible(self, wallet_address: str) -> bool:
        return self.get_active_proof(wallet_address) is not None

    def get_wallet_allocation(self, wallet_address: str) -> int:
        proof = self.get_active_proof(wallet_address)
        return int(proof["amount"]) if proof else 0

    def verify_claim(self, wallet_address: str, amount, proof, root: Optional[str] = None) -> bool:
        """Verify against ``root`` or, by default, the active tree's root."""
        if root is None:
            summary = self.get_active_summary()
            if summary is None:
                return False
            root = summary["root"]
        return verify_proof(wallet_address, amount, proof, root)

    def export_tree(self, tree_id) -> dict:
        """Distributor-style JSON: merkleRoot, tokenTotal and per-wallet claims."""
        tree = self.get_or_404(tree_id)
        return {
            "merkleRoot": tree.root,
            "tokenTotal": tree.total_amount,
            "claims": {
                leaf.wallet_address: {"index": leaf.leaf_index, "amount": leaf.amount, "proof": leaf.proof}
                for leaf in tree.leaves
            },
        }
