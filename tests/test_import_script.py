"""
Tests for scripts/import_merkle_tree.py (runs against the module-level app).
"""

from __future__ import annotations

import importlib.util
import os
import uuid

import pytest

from conftest import ROOT, WALLET_A, WALLET_B

SCRIPT_PATH = os.path.join(ROOT, "scripts", "import_merkle_tree.py")


@pytest.fixture(scope="module")
def script():
    loader_spec = importlib.util.spec_from_file_location("import_merkle_tree", SCRIPT_PATH)
    module = importlib.util.module_from_spec(loader_spec)
    loader_spec.loader.exec_module(module)
    return module


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "alloc.csv"
    path.write_text(f"walletAddress,amount\n{WALLET_A},100\n{WALLET_B},250\n", encoding="utf-8")
    return str(path)


def test_import_creates_tree(script, csv_file, capsys):
    name = f"cli-{uuid.uuid4().hex[:8]}"
    assert script.main([csv_file, name, "from cli", "--created-by", "tester"]) == 0

    out = capsys.readouterr().out
    assert "Parsed 2 allocations" in out
    assert f"Name: {name}" in out
    assert "Total Amount: 350" in out
    assert "Active: False" in out
    assert "To activate: POST /api/admin/merkle-trees/" in out


def test_import_and_activate(script, csv_file, capsys):
    name = f"cli-{uuid.uuid4().hex[:8]}"
    assert script.main([csv_file, name, "from cli", "--activate"]) == 0
    out = capsys.readouterr().out
    assert "Active: True" in out
    assert "To activate" not in out


def test_duplicate_name_fails(script, csv_file, capsys):
    name = f"cli-{uuid.uuid4().hex[:8]}"
    assert script.main([csv_file, name, "first"]) == 0
    capsys.readouterr()

    assert script.main([csv_file, name, "second"]) == 1
    assert "already exists" in capsys.readouterr().err


def test_missing_file_fails(script, tmp_path, capsys):
    assert script.main([str(tmp_path / "nope.csv"), "missing", "x"]) == 1
    assert "File not found" in capsys.readouterr().err


def test_blank_name_fails(script, csv_file, capsys):
    assert script.main([csv_file, "   ", "x"]) == 1
    assert "Name is required" in capsys.readouterr().err
