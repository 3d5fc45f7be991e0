"""
HTTP tests for the admin merkle-tree API, the claim API and health check.
"""

from __future__ import annotations

import io
import json

from conftest import WALLET_A, WALLET_B, WALLET_C

TREES_URL = "/api/admin/merkle-trees"


def _create(admin_client, name="Phase 1", allocations=None):
    body = {"name": name, "description": "Initial distribution", "data": allocations}
    r = admin_client.post(TREES_URL, json=body)
    assert r.status_code == 201, r.get_json()
    return r.get_json()["merkleTree"]


def _activate(admin_client, tree_id):
    r = admin_client.post(f"{TREES_URL}/{tree_id}/activate")
    assert r.status_code == 200, r.get_json()
    return r.get_json()


def test_admin_routes_require_login(client):
    assert client.get(TREES_URL).status_code == 403
    assert client.post(TREES_URL, json={"name": "x"}).status_code == 403
    assert client.post(f"{TREES_URL}/1/activate").status_code == 403
    body = client.get(f"{TREES_URL}/1").get_json()
    assert body == {"success": False, "error": "Admin access required"}


def test_login_with_wrong_key_rejected(client):
    r = client.post("/api/admin/merkle/login", json={"key": "wrong"})
    assert r.status_code == 403
    assert client.get(TREES_URL).status_code == 403


def test_logout_drops_admin_session(admin_client):
    assert admin_client.get(TREES_URL).status_code == 200
    admin_client.post("/api/admin/merkle/logout")
    assert admin_client.get(TREES_URL).status_code == 403


def test_create_from_json(admin_client, scenario_allocations):
    tree = _create(admin_client, allocations=scenario_allocations)
    assert tree["totalAmount"] == "350"
    assert tree["totalUsers"] == 2
    assert tree["isActive"] is False
    assert tree["createdBy"] == "ops"
    assert tree["root"].startswith("0x") and len(tree["root"]) == 66


def test_create_from_csv_upload(admin_client):
    csv_bytes = f"walletAddress,amount\n{WALLET_A},100\n{WALLET_B},200\n{WALLET_A},50\n".encode()
    r = admin_client.post(
        TREES_URL,
        data={"name": "CSV Drop", "description": "from csv", "file": (io.BytesIO(csv_bytes), "alloc.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    tree = r.get_json()["merkleTree"]
    assert tree["totalAmount"] == "350"
    assert tree["totalUsers"] == 2


def test_create_rejects_unsupported_upload(admin_client):
    r = admin_client.post(
        TREES_URL,
        data={"name": "Bad", "file": (io.BytesIO(b"x"), "alloc.txt")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert "Unsupported file format" in r.get_json()["error"]


def test_create_duplicate_name_conflicts(admin_client, scenario_allocations):
    _create(admin_client, allocations=scenario_allocations)
    r = admin_client.post(TREES_URL, json={"name": "Phase 1", "data": scenario_allocations})
    assert r.status_code == 409


def test_create_invalid_input(admin_client):
    r = admin_client.post(TREES_URL, json={"name": "Bad", "data": [{"walletAddress": "0x123", "amount": "1"}]})
    assert r.status_code == 400
    assert r.get_json()["error"].startswith("Invalid allocation at index 0")

    r = admin_client.post(TREES_URL, json={"name": "X", "data": [{"walletAddress": WALLET_A, "amount": "1"}]})
    assert r.status_code == 400

    r = admin_client.post(TREES_URL, json={"name": "No data"})
    assert r.status_code == 400

    assert admin_client.get(TREES_URL).get_json()["pagination"]["total"] == 0


def test_get_validate_and_list(admin_client, scenario_allocations):
    tree = _create(admin_client, allocations=scenario_allocations)

    r = admin_client.get(f"{TREES_URL}/{tree['id']}?include_leaves=1")
    leaves = r.get_json()["merkleTree"]["leaves"]
    assert [leaf["walletAddress"] for leaf in leaves] == [WALLET_A, WALLET_B]
    assert "leaves" not in admin_client.get(f"{TREES_URL}/{tree['id']}").get_json()["merkleTree"]

    r = admin_client.post(f"{TREES_URL}/{tree['id']}/validate")
    assert r.get_json()["validation"] == {"valid": True}

    body = admin_client.get(f"{TREES_URL}?page=1&limit=10").get_json()
    assert body["pagination"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}
    assert admin_client.get(f"{TREES_URL}?limit=500").status_code == 400

    assert admin_client.get(f"{TREES_URL}/999").status_code == 404
    assert admin_client.post(f"{TREES_URL}/999/validate").status_code == 404
    assert admin_client.post(f"{TREES_URL}/999/activate").status_code == 404


def test_activation_switches_active_tree(admin_client, client, scenario_allocations):
    t1 = _create(admin_client, "T1", scenario_allocations)
    t2 = _create(admin_client, "T2", [{"walletAddress": WALLET_C, "amount": "7"}])

    assert client.get("/healthz").get_json() == {"ok": True, "activeTree": None}

    body = _activate(admin_client, t1["id"])
    assert body["message"] == "Merkle tree activated successfully"
    assert body["merkleTree"]["isActive"] is True
    assert client.get("/healthz").get_json()["activeTree"] == t1["id"]

    _activate(admin_client, t2["id"])
    trees = admin_client.get(TREES_URL).get_json()["trees"]
    assert {t["id"]: t["isActive"] for t in trees} == {t1["id"]: False, t2["id"]: True}


def test_claim_endpoints_before_activation(client):
    r = client.get(f"/api/claim/eligibility?wallet={WALLET_A}")
    assert r.get_json()["eligible"] is False
    assert r.get_json()["reason"] == "no_active_distribution"

    r = client.get(f"/api/claim/proof?wallet={WALLET_A}")
    assert r.status_code == 404
    assert r.get_json()["message"] == "No active token distribution available"

    r = client.post("/api/claim/verify", json={"walletAddress": WALLET_A, "amount": "1", "proof": []})
    assert r.get_json() == {"success": True, "valid": False, "reason": "no_active_distribution"}


def test_claim_flow(admin_client, client, scenario_allocations):
    tree = _create(admin_client, allocations=scenario_allocations)
    _activate(admin_client, tree["id"])

    assert client.get("/api/claim/eligibility?wallet=0x123").status_code == 400
    assert client.get("/api/claim/eligibility").status_code == 400

    r = client.get(f"/api/claim/eligibility?wallet={WALLET_A.upper().replace('0X', '0x')}")
    body = r.get_json()
    assert body["eligible"] is True
    assert body["wallet"] == WALLET_A
    assert body["amount"] == "150"
    assert body["distribution"]["id"] == tree["id"]

    r = client.get(f"/api/claim/eligibility?wallet={WALLET_C}")
    assert r.get_json()["reason"] == "not_in_distribution"

    r = client.get(f"/api/claim/proof?wallet={WALLET_C}")
    assert r.status_code == 404
    assert r.get_json()["message"] == "Wallet address not eligible for token claim"

    proof = client.get(f"/api/claim/proof?wallet={WALLET_B}").get_json()
    assert proof["amount"] == "200"
    assert proof["index"] == 1
    assert proof["root"] == tree["root"]

    claim = {"walletAddress": WALLET_B, "amount": proof["amount"], "proof": proof["proof"]}
    assert client.post("/api/claim/verify", json=claim).get_json()["valid"] is True
    assert client.post("/api/claim/verify", json={**claim, "amount": "201"}).get_json()["valid"] is False
    assert client.post("/api/claim/verify", json={**claim, "walletAddress": WALLET_C}).get_json()["valid"] is False
    assert client.post("/api/claim/verify", json={**claim, "root": tree["root"]}).get_json()["valid"] is True
    assert client.post("/api/claim/verify", json={**claim, "proof": "0xabc"}).status_code == 400


def test_export_json_download(admin_client, scenario_allocations):
    tree = _create(admin_client, allocations=scenario_allocations)
    r = admin_client.get(f"{TREES_URL}/{tree['id']}/export.json")
    assert r.status_code == 200
    assert "attachment" in r.headers["Content-Disposition"]
    payload = json.loads(r.data)
    assert payload["merkleRoot"] == tree["root"]
    assert payload["tokenTotal"] == "350"
    assert payload["claims"][WALLET_A]["amount"] == "150"

    assert admin_client.get(f"{TREES_URL}/999/export.json").status_code == 404


def test_unknown_route_returns_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.get_json()["success"] is False
    assert r.headers["Cache-Control"] == "no-store"


def test_create_rejects_non_object_body(admin_client):
    r = admin_client.post(TREES_URL, json=[{"walletAddress": WALLET_A, "amount": "1"}])
    assert r.status_code == 400
    assert r.get_json()["error"] == "Request body must be a JSON object"


def test_create_rejects_non_string_fields(admin_client):
    data = [{"walletAddress": WALLET_A, "amount": "1"}]
    r = admin_client.post(TREES_URL, json={"name": 12345, "data": data})
    assert r.status_code == 400
    assert r.get_json()["error"] == "Name must be a string"

    r = admin_client.post(TREES_URL, json={"name": "Phase 1", "description": ["x"], "data": data})
    assert r.status_code == 400
    assert r.get_json()["error"] == "Description must be a string"


def test_login_rejects_non_string_key(client):
    assert client.post("/api/admin/merkle/login", json={"key": 12345}).status_code == 400
    assert client.post("/api/admin/merkle/login", json=["test-merkle-key"]).status_code == 403
    assert client.get(TREES_URL).status_code == 403


def test_verify_rejects_non_object_body(client):
    r = client.post("/api/claim/verify", json=[WALLET_A, "1", []])
    assert r.status_code == 400


def test_upload_size_is_capped(app, admin_client):
    assert app.config["MAX_CONTENT_LENGTH"] == 50 * 1024 * 1024

    app.config["MAX_CONTENT_LENGTH"] = 2048
    rows = "".join(f"{WALLET_A},{i}\n" for i in range(200))
    r = admin_client.post(
        TREES_URL,
        data={"name": "Too big", "file": (io.BytesIO(rows.encode()), "alloc.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 413
    assert r.get_json() == {"success": False, "error": "File too large. Maximum size is 2048 bytes"}
    assert admin_client.get(TREES_URL).get_json()["pagination"]["total"] == 0
