"""Admin merkle-tree APIs (create from CSV/JSON, validate, activate, export).

Admin access rules:
- Merkle dashboard has its own key: ADMIN_MERKLE_KEY (fallback to ADMIN_API_KEY).
- After key validation we store an 'admin_merkle' flag in the flask session.

Routes:
- POST /api/admin/merkle/login
- POST /api/admin/merkle/logout
- GET  /api/admin/merkle-trees
- POST /api/admin/merkle-trees
- GET  /api/admin/merkle-trees/<id>
- POST /api/admin/merkle-trees/<id>/validate
- POST /api/admin/merkle-trees/<id>/activate
- GET  /api/admin/merkle-trees/<id>/export.json
"""

import json
import os

from flask import Blueprint, Response, current_app, jsonify, request, session as flask_session

from allocations import parse_allocation_source, parse_json_allocations
from errors import (
    ActivationConflictError,
    DuplicateNameError,
    IntegrityError,
    InvalidAllocationError,
    InvalidNameError,
    TreeNotFoundError,
)
from log import get_logger

logger = get_logger(__name__)

NAME_MIN_LEN = 2
NAME_MAX_LEN = 100
DESCRIPTION_MAX_LEN = 500


def _admin_key() -> str:
    """Per-dashboard key for merkle trees.

    Backward compatibility: if ADMIN_MERKLE_KEY is not set, fall back to ADMIN_API_KEY.
    """
    return os.getenv("ADMIN_MERKLE_KEY") or os.getenv("ADMIN_API_KEY", "admin123")


admin_merkle = Blueprint("admin_merkle", __name__)


def _repo():
    return current_app.extensions["merkle_trees"]


def _is_admin() -> bool:
    return bool(flask_session.get("admin_merkle"))


def _require_admin():
    if not _is_admin():
        return jsonify({"success": False, "error": "Admin access required"}), 403
    return None


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


@admin_merkle.post("/api/admin/merkle/login")
def admin_merkle_login():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form
    key = data.get("key", "")
    name = data.get("name")
    if not isinstance(key, str) or not isinstance(name, (str, type(None))):
        return _error("key and name must be strings", 400)
    key = key.strip()
    if key and key == str(_admin_key()):
        flask_session["admin_merkle"] = True
        flask_session["admin_merkle_name"] = (name or "admin").strip()[:100] or "admin"
        return jsonify({"success": True})
    return _error("Invalid key", 403)


@admin_merkle.post("/api/admin/merkle/logout")
def admin_merkle_logout():
    flask_session.pop("admin_merkle", None)
    flask_session.pop("admin_merkle_name", None)
    return jsonify({"success": True})


@admin_merkle.get("/api/admin/merkle-trees")
def api_admin_list_trees():
    err = _require_admin()
    if err:
        return err

    try:
        page = int(request.args.get("page") or 1)
        limit = int(request.args.get("limit") or 10)
    except ValueError:
        return _error("page and limit must be integers", 400)
    if page < 1:
        return _error("Page must be a positive integer", 400)
    if limit < 1 or limit > 100:
        return _error("Limit must be between 1 and 100", 400)

    trees, total = _repo().list_trees(page=page, limit=limit)
    return jsonify({
        "success": True,
        "trees": [t.to_dict() for t in trees],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    })


def _read_create_payload():
    """Return (name, description, raw_allocations) from multipart upload or JSON body."""
    upload = request.files.get("file")
    if upload is not None:
        content = upload.read().decode("utf-8-sig")
        allocations = parse_allocation_source(content, upload.filename or "")
        return (request.form.get("name") or ""), (request.form.get("description") or ""), allocations

    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidAllocationError("Request body must be a JSON object")
    raw = data.get("data")
    if raw is None:
        raw = data.get("allocations")
    if not isinstance(raw, list):
        raise InvalidAllocationError("Data must be a non-empty array")
    return (data.get("name") or ""), (data.get("description") or ""), parse_json_allocations(raw)


@admin_merkle.post("/api/admin/merkle-trees")
def api_admin_create_tree():
    err = _require_admin()
    if err:
        return err

    try:
        name, description, allocations = _read_create_payload()
    except InvalidAllocationError as e:
        return _error(e.reason, 400)
    except UnicodeDecodeError:
        return _error("Uploaded file must be UTF-8 text", 400)

    if not isinstance(name, str):
        return _error("Name must be a string", 400)
    if not isinstance(description, str):
        return _error("Description must be a string", 400)
    name = name.strip()
    description = description.strip()
    if not (NAME_MIN_LEN <= len(name) <= NAME_MAX_LEN):
        return _error(f"Name must be between {NAME_MIN_LEN} and {NAME_MAX_LEN} characters", 400)
    if len(description) > DESCRIPTION_MAX_LEN:
        return _error(f"Description must not exceed {DESCRIPTION_MAX_LEN} characters", 400)
    if not allocations:
        return _error("No valid allocations found", 400)

    created_by = flask_session.get("admin_merkle_name") or "admin"
    try:
        tree = _repo().create(name, description, allocations, created_by=created_by)
    except (InvalidAllocationError, InvalidNameError) as e:
        return _error(e.reason, 400)
    except DuplicateNameError as e:
        return _error(e.reason, 409)

    return jsonify({"success": True, "merkleTree": tree.to_dict()}), 201


@admin_merkle.get("/api/admin/merkle-trees/<int:tree_id>")
def api_admin_get_tree(tree_id: int):
    err = _require_admin()
    if err:
        return err

    tree = _repo().get(tree_id)
    if tree is None:
        return _error("Merkle tree not found", 404)
    include_leaves = (request.args.get("include_leaves") or "").lower() in {"1", "true", "yes"}
    return jsonify({"success": True, "merkleTree": tree.to_dict(include_leaves=include_leaves)})


@admin_merkle.post("/api/admin/merkle-trees/<int:tree_id>/validate")
def api_admin_validate_tree(tree_id: int):
    err = _require_admin()
    if err:
        return err

    try:
        result = _repo().validate_integrity(tree_id)
    except TreeNotFoundError as e:
        return _error(e.reason, 404)
    return jsonify({"success": True, "validation": result.to_dict()})


@admin_merkle.post("/api/admin/merkle-trees/<int:tree_id>/activate")
def api_admin_activate_tree(tree_id: int):
    err = _require_admin()
    if err:
        return err

    try:
        tree = _repo().activate(tree_id)
    except TreeNotFoundError as e:
        return _error(e.reason, 404)
    except IntegrityError as e:
        return _error(e.reason, 400)
    except ActivationConflictError as e:
        return _error(e.reason, 409)

    logger.info("admin_merkle_tree_activated", tree_id=tree.id, admin=flask_session.get("admin_merkle_name"))
    return jsonify({"success": True, "message": "Merkle tree activated successfully", "merkleTree": tree.to_dict()})


@admin_merkle.get("/api/admin/merkle-trees/<int:tree_id>/export.json")
def api_admin_export_tree(tree_id: int):
    err = _require_admin()
    if err:
        return err

    try:
        payload = _repo().export_tree(tree_id)
    except TreeNotFoundError as e:
        return _error(e.reason, 404)
    return Response(
        json.dumps(payload, indent=2),
        mimetype="application/json",
        headers={"Content-Disposition": f"attachment; filename=merkle-tree-{tree_id}.json"},
    )
