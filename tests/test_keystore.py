import base64
import dataclasses
import threading

import pytest
import yaml
from cryptography.hazmat.primitives.asymmetric import ec
from dns.dnssecalgs.ecdsa import PrivateECDSAP256SHA256

from delegsync.keystore import (
    KeyStore,
    generate_keypair,
    load_bind_keypair,
    load_public_key,
    validate_key_rrset,
    verify_owned_key,
    verify_public_key,
)
from delegsync.models import (
    DuplicateKeyError,
    KeyState,
    KeyStoreError,
    NoSigningKeyError,
    NotValidatedError,
    UnknownKeyError,
)


def test_set_state_on_missing_key_leaves_store_unchanged(store):
    store.add("child.example.", generate_keypair("child.example."))
    before = store.list()
    with pytest.raises(UnknownKeyError):
        store.set_state("child.example.", 5, "active")
    assert store.list() == before


def test_add_rejects_duplicates(store):
    key = generate_keypair("child.example.")
    store.add("child.example.", key)
    with pytest.raises(DuplicateKeyError):
        store.add("CHILD.example", key)


def test_new_keys_start_created_and_untrusted(store):
    stored = store.add("child.example", generate_keypair("child.example."), creator="test")
    assert stored.owner == "child.example."
    assert stored.state == KeyState.CREATED
    assert not stored.validated
    assert not stored.trusted
    assert stored.creator == "test"


def test_any_state_transition_is_allowed(store):
    key = store.add("child.example.", generate_keypair("child.example."))
    for state in (KeyState.RETIRED, KeyState.ACTIVE, KeyState.CREATED, "retired"):
        assert store.set_state("child.example.", key.keyid, state).state == KeyState(state)


def test_trust_requires_validation(store):
    key = store.add("child.example.", generate_keypair("child.example."))
    with pytest.raises(NotValidatedError):
        store.set_trust("child.example.", key.keyid, True)
    assert not store.get("child.example.", key.keyid).trusted
    assert verify_owned_key(store, "child.example.", key.keyid)
    assert store.set_trust("child.example.", key.keyid, True).trusted
    assert not store.set_trust("child.example.", key.keyid, False).trusted


def test_validation_and_trust_are_independent(store):
    key = store.add("child.example.", generate_keypair("child.example."))
    verify_owned_key(store, "child.example.", key.keyid)
    stored = store.get("child.example.", key.keyid)
    assert stored.validated and not stored.trusted


def test_delete_is_final(store):
    key = store.add("child.example.", generate_keypair("child.example."))
    store.delete("child.example.", key.keyid)
    with pytest.raises(UnknownKeyError):
        store.get("child.example.", key.keyid)
    with pytest.raises(UnknownKeyError):
        store.delete("child.example.", key.keyid)


def test_lookups_return_copies(store):
    key = store.add("child.example.", generate_keypair("child.example."))
    copy = store.get("child.example.", key.keyid)
    copy.state = KeyState.ACTIVE
    assert store.get("child.example.", key.keyid).state == KeyState.CREATED


def test_active_signing_key(store):
    with pytest.raises(NoSigningKeyError):
        store.active_signing_key("child.example.")
    public = store.add("child.example.", load_public_key(generate_keypair("child.example.").public_rr_text()))
    store.set_state("child.example.", public.keyid, KeyState.ACTIVE)
    with pytest.raises(NoSigningKeyError):
        store.active_signing_key("child.example.")
    owned = store.add("child.example.", generate_keypair("child.example."))
    store.set_state("child.example.", owned.keyid, KeyState.ACTIVE)
    assert store.active_signing_key("child.example.").keyid == owned.keyid


def test_store_persists_to_yaml(tmp_path):
    path = tmp_path / "keys.yaml"
    store = KeyStore(path)
    key = store.add("child.example.", generate_keypair("child.example."))
    store.set_state("child.example.", key.keyid, KeyState.ACTIVE)
    reloaded = KeyStore(path)
    stored = reloaded.get("child.example.", key.keyid)
    assert stored.state == KeyState.ACTIVE
    assert stored.private_key == key.private_key


def test_corrupt_store_file(tmp_path):
    path = tmp_path / "keys.yaml"
    path.write_text("keys:\n  - owner: child.example.\n    keyid: not-a-number\n", encoding="utf-8")
    with pytest.raises(KeyStoreError):
        KeyStore(path)


def test_store_file_with_trusted_unvalidated_key_is_rejected(tmp_path):
    path = tmp_path / "keys.yaml"
    key = KeyStore(path).add("child.example.", generate_keypair("child.example."))
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    data["keys"][0]["trusted"] = True
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    with pytest.raises(KeyStoreError, match=f"key {key.keyid} for child.example. is trusted but not validated"):
        KeyStore(path)


def test_failed_write_leaves_store_unchanged(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = KeyStore(blocker / "keys.yaml")
    with pytest.raises(KeyStoreError, match="Cannot write key store"):
        store.add("child.example.", generate_keypair("child.example."))
    assert store.list() == []


def test_failed_write_keeps_previous_state(tmp_path):
    path = tmp_path / "keys.yaml"
    store = KeyStore(path)
    key = store.add("child.example.", generate_keypair("child.example."))
    store.path = tmp_path / "missing" / "keys.yaml"
    (tmp_path / "missing").write_text("", encoding="utf-8")
    with pytest.raises(KeyStoreError):
        store.set_state("child.example.", key.keyid, KeyState.ACTIVE)
    with pytest.raises(KeyStoreError):
        store.delete("child.example.", key.keyid)
    assert store.get("child.example.", key.keyid).state == KeyState.CREATED


def test_add_derives_keyid_from_material(store):
    generated = generate_keypair("child.example.")
    mislabelled = dataclasses.replace(generated, keyid=(generated.keyid + 1) % 65536)
    stored = store.add("child.example.", mislabelled)
    assert stored.keyid == generated.keyid
    with pytest.raises(DuplicateKeyError):
        store.add("child.example.", generated)


def test_concurrent_state_changes_do_not_corrupt(store):
    key = store.add("child.example.", generate_keypair("child.example."))
    states = [KeyState.ACTIVE, KeyState.RETIRED] * 20

    def flip(state):
        store.set_state("child.example.", key.keyid, state)

    threads = [threading.Thread(target=flip, args=(state,)) for state in states]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert store.get("child.example.", key.keyid).state in {KeyState.ACTIVE, KeyState.RETIRED}
    assert len(KeyStore(store.path).list()) == 1


def test_verify_public_key_checks_key_tag(store):
    key = store.add("peer.example.", load_public_key(generate_keypair("peer.example.").public_rr_text()))
    assert verify_public_key(store, "peer.example.", key.keyid)
    assert store.get("peer.example.", key.keyid).validated


def test_validate_against_published_rrset(store):
    key = store.add("child.example.", generate_keypair("child.example."))
    other = generate_keypair("child.example.")
    assert not validate_key_rrset(store, "child.example.", key.keyid, [other.public_key])
    assert not store.get("child.example.", key.keyid).validated
    assert validate_key_rrset(store, "child.example.", key.keyid, [other.public_key, key.public_key])
    assert store.get("child.example.", key.keyid).validated


def test_load_public_key_forms():
    generated = generate_keypair("child.example.")
    from_rr = load_public_key(f"child.example. 3600 IN KEY {generated.public_key}")
    from_rdata = load_public_key(generated.public_key, owner="child.example.")
    assert from_rr.keyid == from_rdata.keyid == generated.keyid
    assert from_rr.private_key is None
    with pytest.raises(KeyStoreError):
        load_public_key(generated.public_key)
    with pytest.raises(KeyStoreError):
        load_public_key("child.example. KEY not a key", owner=None)


def test_load_bind_keypair(tmp_path):
    private = PrivateECDSAP256SHA256(key=ec.derive_private_key(1, ec.SECP256R1()))
    dnskey = private.public_key().to_dnskey(flags=256, protocol=3)
    base = tmp_path / "Kchild.example.+013+00001"
    base.with_name(f"{base.name}.key").write_text(
        f"; This is a key file\nchild.example. IN KEY {dnskey.to_text()}\n", encoding="utf-8"
    )
    scalar = base64.b64encode((1).to_bytes(32, "big")).decode()
    base.with_name(f"{base.name}.private").write_text(
        f"Private-key-format: v1.3\nAlgorithm: 13 (ECDSAP256SHA256)\nPrivateKey: {scalar}\n", encoding="utf-8"
    )
    loaded = load_bind_keypair(base.with_name(f"{base.name}.private"))
    assert loaded.owner == "child.example."
    assert loaded.owned
    assert loaded.keyid == dnskey.key_id()

    store = KeyStore()
    store.add(loaded.owner, loaded)
    assert verify_owned_key(store, loaded.owner, loaded.keyid)


def test_bind_keypair_mismatch(tmp_path):
    generated = generate_keypair("child.example.")
    base = tmp_path / "Kchild.example.+013+00002"
    base.with_name(f"{base.name}.key").write_text(f"child.example. IN KEY {generated.public_key}\n", encoding="utf-8")
    scalar = base64.b64encode((7).to_bytes(32, "big")).decode()
    base.with_name(f"{base.name}.private").write_text(
        f"Private-key-format: v1.3\nAlgorithm: 13 (ECDSAP256SHA256)\nPrivateKey: {scalar}\n", encoding="utf-8"
    )
    with pytest.raises(KeyStoreError, match="does not match"):
        load_bind_keypair(base)
