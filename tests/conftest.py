"""Shared pytest fixtures for nexpatch tests."""

from __future__ import annotations

import zipfile
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from nexpatch.config import Settings
from nexpatch.constants import SUPPORTED_ABIS
from nexpatch.injector import LoaderPayload
from nexpatch.keystore import generate_identity
from nexpatch.log import PatchLogger

from tests.builders import DEX_BYTES, app_manifest, write_apk, write_module, write_split

# ============================================================================
# Signing Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def rsa_identity():
    """Self-signed RSA-2048 identity, shared by the whole session."""
    return generate_identity("nexpatch-test")


@pytest.fixture(scope="session")
def ec_identity():
    """Self-signed P-256 identity."""
    return generate_identity("nexpatch-test-ec", curve=ec.SECP256R1())


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def payload_dir(tmp_path: Path) -> Path:
    """Loader payload directory with a bootstrap, a loader and one native lib per ABI."""
    d = tmp_path / "payload"
    (d / "so").mkdir(parents=True)
    (d / "metaloader.dex").write_bytes(b"dex\n035\x00" + b"metaloader" * 50)
    (d / "loader.dex").write_bytes(b"dex\n039\x00" + b"loader" * 80)
    for abi in SUPPORTED_ABIS:
        (d / "so" / abi).mkdir()
        (d / "so" / abi / "libnexpatch.so").write_bytes(b"\x7fELF" + abi.encode() * 100)
    return d


@pytest.fixture
def settings(tmp_path: Path, payload_dir: Path) -> Settings:
    home = tmp_path / "home"
    return Settings(home=home, payload_dir=payload_dir, keystore_path=home / "keystore.p12")


@pytest.fixture
def payload(payload_dir: Path) -> LoaderPayload:
    return LoaderPayload(payload_dir)


@pytest.fixture
def logger() -> PatchLogger:
    return PatchLogger(verbose=True)


# ============================================================================
# Archive Fixtures
# ============================================================================


@pytest.fixture
def app_apk(tmp_path: Path) -> Path:
    """Unsigned app with versionCode 10, native libs for arm64 and two dex files."""
    return write_apk(
        tmp_path / "in" / "app.apk",
        app_manifest(factory="androidx.core.app.CoreComponentFactory"),
        [("lib/arm64-v8a/libapp.so", b"\x7fELF" + b"\x01" * 5000, zipfile.ZIP_STORED),
         ("assets/data.bin", bytes(range(256)) * 40, zipfile.ZIP_DEFLATED)],
    )


@pytest.fixture
def module_a(tmp_path: Path) -> Path:
    return write_module(tmp_path / "mods" / "A.apk", package="com.example.a")


@pytest.fixture
def module_b(tmp_path: Path) -> Path:
    return write_module(tmp_path / "mods" / "B.apk", package="com.example.b",
                        xposed=False, init_list=True)


@pytest.fixture
def not_a_module(tmp_path: Path) -> Path:
    return write_apk(tmp_path / "mods" / "plain.apk", app_manifest(package="com.example.plain"))


@pytest.fixture
def split_apk(tmp_path: Path) -> Path:
    return write_split(tmp_path / "in" / "split_config.arm64_v8a.apk")


@pytest.fixture
def dex_bytes() -> bytes:
    return DEX_BYTES
