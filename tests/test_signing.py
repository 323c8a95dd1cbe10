"""v1 / v2 / v3 signing, checked against the independent verifier."""

from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from nexpatch.archive import ArchiveReader
from nexpatch.jarsign import _attr_line
from nexpatch.sigblock import (BLOCK_ALIGN, assemble_block, estimate_reserve,
                               find_signing_block, original_signature, scheme_values,
                               V2_BLOCK_ID, V3_BLOCK_ID)
from nexpatch.verify import verify_apk

from tests.builders import sign_apk


class TestJarSigning:
    def test_long_lines_wrap_at_70_bytes(self):
        line = _attr_line("Name", "res/" + "x" * 200)
        parts = line.split(b"\r\n")[:-1]
        assert all(len(p) <= 70 for p in parts)
        assert all(p.startswith(b" ") for p in parts[1:])
        assert b"".join([parts[0]] + [p[1:] for p in parts[1:]]) == b"Name: res/" + b"x" * 200

    def test_v1_only(self, app_apk, tmp_path, rsa_identity):
        out = sign_apk(app_apk, tmp_path / "v1.apk", rsa_identity, v2=False, v3=False)
        report = verify_apk(out)
        assert report.verified, report.lines()
        assert report.scheme_ok("v1")
        assert not report.checks["v2"].present
        with ArchiveReader(out) as reader:
            assert reader.has("META-INF/CERT.SF")
            assert reader.has("META-INF/CERT.RSA")

    def test_tampered_entry_fails(self, app_apk, tmp_path, rsa_identity):
        out = sign_apk(app_apk, tmp_path / "v1.apk", rsa_identity, v2=False, v3=False)
        tampered = tmp_path / "tampered.apk"
        with zipfile.ZipFile(out) as src, zipfile.ZipFile(tampered, "w") as dst:
            for zi in src.infolist():
                data = src.read(zi)
                if zi.filename == "res/layout/main.xml":
                    data = b"<changed/>"
                dst.writestr(zi, data)
        report = verify_apk(tampered)
        assert not report.verified
        assert any("digest mismatch" in e for e in report.checks["v1"].errors)


class TestSigningBlock:
    @pytest.mark.parametrize("identity_name", ["rsa_identity", "ec_identity"])
    def test_all_schemes_verify(self, app_apk, tmp_path, identity_name, request):
        identity = request.getfixturevalue(identity_name)
        out = sign_apk(app_apk, tmp_path / "signed.apk", identity)
        report = verify_apk(out)
        assert report.verified, report.lines()
        assert report.alignment == []
        for scheme in ("v1", "v2", "v3"):
            assert report.scheme_ok(scheme)
        assert report.checks["v1"].apk_signed == "2, 3"
        assert report.checks["v2"].stripping_protected
        assert report.checks["v2"].certificate == identity.certificate_der

    def test_v2_only(self, app_apk, tmp_path, ec_identity):
        out = sign_apk(app_apk, tmp_path / "v2.apk", ec_identity, v1=False, v3=False)
        report = verify_apk(out)
        assert report.verified, report.lines()
        assert not report.checks["v1"].present
        assert not report.checks["v2"].stripping_protected

    def test_tampered_archive_fails_v2(self, app_apk, tmp_path, rsa_identity):
        out = sign_apk(app_apk, tmp_path / "v2.apk", rsa_identity, v1=False, v3=False)
        data = bytearray(out.read_bytes())
        data[40] ^= 0x01
        out.write_bytes(bytes(data))
        report = verify_apk(out)
        assert not report.scheme_ok("v2")

    def test_missing_declared_scheme_is_an_error(self, app_apk, tmp_path, rsa_identity):
        out = sign_apk(app_apk, tmp_path / "stripped.apk", rsa_identity,
                       v2=False, v3=False, apk_signed=[2])
        report = verify_apk(out)
        assert report.scheme_ok("v1")
        assert not report.verified
        assert any("v2" in e for e in report.errors)

    def test_block_layout(self, app_apk, tmp_path, rsa_identity):
        out = sign_apk(app_apk, tmp_path / "signed.apk", rsa_identity)
        block = find_signing_block(out.read_bytes())
        assert set(block.pairs) >= {V2_BLOCK_ID, V3_BLOCK_ID}
        assert (block.cd_offset - block.offset) % BLOCK_ALIGN == 0

    def test_reserve_fits_any_signature(self, rsa_identity, ec_identity):
        for identity in (rsa_identity, ec_identity):
            reserve = estimate_reserve(identity, True, True)
            assert reserve % BLOCK_ALIGN == 0
            block = assemble_block(scheme_values(identity, b"\x11" * 32, True, True), reserve)
            assert len(block) == reserve
        assert estimate_reserve(rsa_identity, False, False) == 0


class TestOriginalSignature:
    def test_unsigned(self, app_apk):
        assert original_signature(app_apk) is None

    def test_prefers_block_certificate(self, app_apk, tmp_path, ec_identity):
        out = sign_apk(app_apk, tmp_path / "signed.apk", ec_identity)
        assert original_signature(out) == ec_identity.certificate_der.hex()

    def test_v1_certificate(self, app_apk, tmp_path, rsa_identity):
        out = sign_apk(app_apk, tmp_path / "v1.apk", rsa_identity, v2=False, v3=False)
        assert original_signature(out) == rsa_identity.certificate_der.hex()
