import base64

import pytest

from delegsync.keystore import generate_keypair
from delegsync.models import ConfigError
from delegsync.trust_loader import import_trusted_keys, load_trusted_keys_file


def write(tmp_path, text):
    path = tmp_path / "trusted.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_keys_are_imported_validated_and_trusted(tmp_path, store):
    first = generate_keypair("peer.example.")
    second = generate_keypair("Other.Example")
    path = write(
        tmp_path,
        f"keys:\n  - owner: peer.example\n    key: \"{first.public_key}\"\n"
        f"  - owner: other.example.\n    key: \"{second.public_rr_text()}\"\n",
    )
    result = import_trusted_keys(store, path)
    assert sorted(result.trusted) == sorted([("peer.example.", first.keyid), ("other.example.", second.keyid)])
    for owner, keyid in result.trusted:
        stored = store.get(owner, keyid)
        assert stored.validated and stored.trusted
        assert not stored.owned


def test_reloading_same_file_is_harmless(tmp_path, store):
    key = generate_keypair("peer.example.")
    path = write(tmp_path, f"keys:\n  - owner: peer.example.\n    key: \"{key.public_key}\"\n")
    import_trusted_keys(store, path)
    again = import_trusted_keys(store, path)
    assert again.trusted == []
    assert again.skipped == [("peer.example.", key.keyid)]
    assert len(store.list()) == 1


def test_malformed_key_is_rejected_not_fatal(tmp_path, store):
    path = write(tmp_path, "keys:\n  - owner: peer.example.\n    key: \"256 3 13 ###\"\n")
    result = import_trusted_keys(store, path)
    assert result.rejected == ["peer.example."]
    assert store.list() == []


def test_key_off_the_curve_is_never_stored(tmp_path, store):
    zero_point = base64.b64encode(bytes(64)).decode()
    good = generate_keypair("good.example.")
    path = write(
        tmp_path,
        f"keys:\n  - owner: bad.example.\n    key: \"256 3 13 {zero_point}\"\n"
        f"  - owner: good.example.\n    key: \"{good.public_key}\"\n",
    )
    result = import_trusted_keys(store, path)
    assert result.rejected == ["bad.example."]
    assert result.trusted == [("good.example.", good.keyid)]
    assert [key.owner for key in store.list()] == ["good.example."]


def test_file_is_rendered_with_environment(tmp_path, monkeypatch):
    key = generate_keypair("peer.example.")
    monkeypatch.setenv("PEER_KEY", key.public_key)
    path = write(tmp_path, "keys:\n  - owner: peer.example.\n    key: \"{{ env['PEER_KEY'] }}\"\n")
    loaded = load_trusted_keys_file(path)
    assert loaded.keys[0].key == key.public_key


def test_schema_errors_raise_config_error(tmp_path):
    path = write(tmp_path, "keys:\n  - owner: peer.example.\n")
    with pytest.raises(ConfigError, match="validation"):
        load_trusted_keys_file(path)
