"""Claim-side merkle lookups: eligibility, proof retrieval and proof verification.

All reads go against the active tree. A wallet that is not in the tree (or no
active tree at all) is a normal "not eligible" answer, not an error.
"""

from flask import Blueprint, current_app, jsonify, request

from allocations import is_valid_wallet, normalize_wallet
from extensions import limiter
from log import get_logger

logger = get_logger(__name__)

claims_api = Blueprint("claims_api", __name__)


def _repo():
    return current_app.extensions["merkle_trees"]


def _wallet_arg():
    wallet = normalize_wallet(request.args.get("wallet"))
    return wallet if is_valid_wallet(wallet) else None


@claims_api.route("/api/claim/eligibility", methods=["GET"])
@limiter.limit("60 per minute")
def claim_eligibility():
    wallet = _wallet_arg()
    if not wallet:
        return jsonify({"success": False, "message": "Valid wallet is required"}), 400

    repo = _repo()
    active = repo.get_active_summary()
    if active is None:
        return jsonify({"success": True, "wallet": wallet, "eligible": False, "reason": "no_active_distribution"})

    proof = repo.get_active_proof(wallet)
    if proof is None:
        logger.info("claim_ineligible_wallet", wallet=wallet, tree_id=active["id"])
        return jsonify({"success": True, "wallet": wallet, "eligible": False, "reason": "not_in_distribution"})

    return jsonify({
        "success": True,
        "wallet": wallet,
        "eligible": True,
        "amount": proof["amount"],
        "distribution": {"id": active["id"], "name": active["name"], "root": active["root"]},
    })


@claims_api.route("/api/claim/proof", methods=["GET"])
@limiter.limit("60 per minute")
def claim_proof():
    wallet = _wallet_arg()
    if not wallet:
        return jsonify({"success": False, "message": "Valid wallet is required"}), 400

    repo = _repo()
    if repo.get_active_summary() is None:
        return jsonify({"success": False, "message": "No active token distribution available"}), 404

    proof = repo.get_active_proof(wallet)
    if proof is None:
        return jsonify({"success": False, "message": "Wallet address not eligible for token claim"}), 404

    return jsonify({
        "success": True,
        "wallet": wallet,
        "amount": proof["amount"],
        "index": proof["index"],
        "proof": proof["proof"],
        "root": proof["root"],
    })


@claims_api.route("/api/claim/verify", methods=["POST"])
@limiter.limit("30 per minute")
def claim_verify():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"success": False, "message": "Request body must be a JSON object"}), 400
    wallet = data.get("walletAddress") or data.get("wallet")
    amount = data.get("amount")
    proof = data.get("proof")
    root = data.get("root")

    if not isinstance(proof, list):
        return jsonify({"success": False, "message": "proof must be an array of hashes"}), 400
    if root is None and _repo().get_active_summary() is None:
        return jsonify({"success": True, "valid": False, "reason": "no_active_distribution"})

    valid = _repo().verify_claim(wallet, amount, proof, root=root)
    return jsonify({"success": True, "valid": valid})
