import json

import yaml

from delegsync.exporter import diff_to_dict, dump, keys_to_dict
from delegsync.keystore import generate_keypair
from delegsync.models import DelegationDiff, Record


def test_diff_export_yaml_and_json():
    diff = DelegationDiff(
        ns_adds=[Record("child.example.", "NS", 3600, "NS2.child.example")],
        a_removes=[Record("ns1.child.example.", "A", 3600, "192.0.2.1")],
    )
    data = diff_to_dict("child.example.", diff)
    assert data["in_sync"] is False
    assert data["add"] == [{"name": "child.example.", "type": "NS", "ttl": 3600, "value": "ns2.child.example."}]
    assert yaml.safe_load(dump(data)) == data
    assert json.loads(dump(data, "json")) == data


def test_key_listing_never_contains_private_material():
    key = generate_keypair("child.example.")
    text = dump(keys_to_dict([key]))
    assert "PRIVATE KEY" not in text
    assert yaml.safe_load(text)["keys"][0]["state"] == "created"
