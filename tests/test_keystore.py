"""Signing identity store."""

from __future__ import annotations

import threading

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from nexpatch.config import Settings
from nexpatch.errors import SigningIdentityUnavailable
from nexpatch.keystore import (SIG_ECDSA_SHA256, SIG_RSA_PKCS1_V1_5_SHA256, IdentityStore,
                               dump_pkcs12, generate_identity, load_pkcs12)


class TestIdentity:
    def test_rsa(self, rsa_identity):
        assert rsa_identity.is_rsa
        assert rsa_identity.signature_algorithm_id == SIG_RSA_PKCS1_V1_5_SHA256
        assert rsa_identity.block_extension == "RSA"
        assert len(rsa_identity.sign(b"data")) == rsa_identity.max_signature_size

    def test_ec(self, ec_identity):
        assert not ec_identity.is_rsa
        assert ec_identity.signature_algorithm_id == SIG_ECDSA_SHA256
        assert ec_identity.block_extension == "EC"
        for _ in range(10):
            assert len(ec_identity.sign(b"data")) <= ec_identity.max_signature_size

    def test_pkcs12_round_trip(self, ec_identity):
        data = dump_pkcs12(ec_identity, "secret")
        loaded = load_pkcs12(data, "secret")
        assert loaded.fingerprint == ec_identity.fingerprint
        assert loaded.alias == ec_identity.alias

    def test_wrong_password(self, ec_identity):
        with pytest.raises(SigningIdentityUnavailable):
            load_pkcs12(dump_pkcs12(ec_identity, "secret"), "wrong")

    def test_key_password_fallback(self, ec_identity):
        loaded = load_pkcs12(dump_pkcs12(ec_identity, "keypw"), "storepw", key_password="keypw")
        assert loaded.fingerprint == ec_identity.fingerprint

    def test_alias_mismatch(self, ec_identity):
        with pytest.raises(SigningIdentityUnavailable, match="alias"):
            load_pkcs12(dump_pkcs12(ec_identity, "pw"), "pw", alias="other")


class TestStore:
    def test_default_created_once(self, settings):
        store = IdentityStore(settings)
        first = store.resolve()
        assert settings.keystore_path.exists()
        assert store.resolve().fingerprint == first.fingerprint

    def test_concurrent_first_use_agrees_on_one_key(self, settings):
        """Runs racing to create the default store all sign with the key that ends up stored."""
        barrier = threading.Barrier(4)
        used, errors = [], []

        def worker():
            barrier.wait()
            try:
                used.append(IdentityStore(settings).resolve().fingerprint)
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = IdentityStore(settings).resolve().fingerprint
        assert used == [stored] * 4
        assert [p.name for p in settings.keystore_path.parent.iterdir()] == \
            [settings.keystore_path.name]

    def test_reset_replaces(self, settings):
        store = IdentityStore(settings)
        first = store.resolve()
        assert store.reset().fingerprint != first.fingerprint
        assert store.resolve().fingerprint != first.fingerprint

    def test_custom_store(self, settings, tmp_path, ec_identity):
        source = tmp_path / "mine.p12"
        source.write_bytes(dump_pkcs12(ec_identity, "mine"))
        store = IdentityStore(settings)
        store.set_custom(source, "mine")
        assert store.resolve().fingerprint == ec_identity.fingerprint

    def test_missing_custom_path(self, tmp_path):
        settings = Settings(home=tmp_path, payload_dir=tmp_path,
                            keystore_path=tmp_path / "elsewhere.p12")
        with pytest.raises(SigningIdentityUnavailable):
            IdentityStore(settings).resolve()

    def test_generated_curve(self):
        assert not generate_identity(curve=ec.SECP384R1()).is_rsa
