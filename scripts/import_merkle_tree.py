#!/usr/bin/env python3
"""Import a merkle tree from a CSV or JSON allocation file.

Usage:
  python scripts/import_merkle_tree.py allocations.csv "Phase 1 Distribution" "Initial token distribution" --created-by ops
  python scripts/import_merkle_tree.py allocations.json "Presale Distribution" "Presale participants" --activate

CSV format:  walletAddress,amount   (header optional)
JSON format: [{"walletAddress": "0x...", "amount": "1000000000000000000"}]
             or {"allocations": [...]}
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from allocations import load_allocations_file  # noqa: E402
from app import app  # noqa: E402
from errors import MerkleError  # noqa: E402


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create a merkle tree from an allocation file")
    parser.add_argument("file", help="path to .csv or .json allocations")
    parser.add_argument("name", help="unique tree name")
    parser.add_argument("description", help="tree description / criteria")
    parser.add_argument("--created-by", default=os.getenv("USER", "cli"), help="admin identifier recorded on the tree")
    parser.add_argument("--activate", action="store_true", help="activate the tree after creation")
    args = parser.parse_args(argv)

    with app.app_context():
        repo = app.extensions["merkle_trees"]
        try:
            allocations = load_allocations_file(args.file)
            print(f"Parsed {len(allocations)} allocations from {args.file}")
            tree = repo.create(args.name, args.description, allocations, created_by=args.created_by)
            if args.activate:
                tree = repo.activate(tree.id)
        except MerkleError as e:
            print(f"Error importing merkle tree: {e}", file=sys.stderr)
            return 1

        print("Merkle tree created successfully")
        print(f"ID: {tree.id}")
        print(f"Name: {tree.name}")
        print(f"Total Users: {tree.total_users}")
        print(f"Total Amount: {tree.total_amount}")
        print(f"Root: {tree.root}")
        print(f"Active: {bool(tree.is_active)}")
        if not args.activate:
            print(f"To activate: POST /api/admin/merkle-trees/{tree.id}/activate")
    return 0


if __name__ == "__main__":
    sys.exit(main())
