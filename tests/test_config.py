import json

import pytest

from hash_inventory.config import load_roots
from hash_inventory.exceptions import StructuralError


def _write(tmp_path, data):
    p = tmp_path / "roots.json"
    p.write_text(json.dumps(data), encoding="utf-8")
    return p


def test_load_roots(tmp_path):
    registry = load_roots(_write(tmp_path, {"roots": [
        {"path": "/vault/", "priority": 10, "vault": True},
        {"path": "/work", "priority": 20},
    ]}))

    assert [r.path for r in registry.roots] == ["/vault", "/work"]
    assert registry.is_vault("/vault")
    assert registry.priority("/work") == 20


@pytest.mark.parametrize("data", [
    [{"path": "/a", "priority": 1}],
    {"roots": {"path": "/a", "priority": 1}},
    {"roots": ["/a"]},
    {"roots": [{"path": "/a"}]},
    {"roots": [{"path": "/a", "priority": "high"}]},
    "roots",
])
def test_malformed_roots_file(tmp_path, data):
    with pytest.raises(StructuralError):
        load_roots(_write(tmp_path, data))


def test_unparsable_roots_file(tmp_path):
    p = tmp_path / "roots.json"
    p.write_text("{not json", encoding="utf-8")
    with pytest.raises(StructuralError):
        load_roots(p)
