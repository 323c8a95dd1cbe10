"""
verify.py  ─  signature verification (v1 / v2 / v3) + alignment audit

Checks an archive the way the platform installer would, closely enough to
catch any signing regression in the engine. Used by tests and by
`nexpatch verify`.
"""

import base64
import hashlib
import struct
import zipfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7

from nexpatch.archive import ArchiveReader, check_alignment
from nexpatch.errors import CorruptArchive, IOFailure
from nexpatch.jarsign import MANIFEST_MF, is_signature_entry, signature_block_names
from nexpatch.keystore import SIG_ECDSA_SHA256, SIG_RSA_PKCS1_V1_5_SHA256
from nexpatch.sigblock import (STRIPPING_PROTECTION_ATTR_ID, V2_BLOCK_ID, V3_BLOCK_ID,
                               block_digest_regions, chunked_digest, find_signing_block,
                               parse_signers)

_OID_SHA256 = bytes.fromhex("608648016503040201")
_OID_SHA1   = bytes.fromhex("2b0e03021a")
_DIGESTS    = {_OID_SHA256: hashes.SHA256, _OID_SHA1: hashes.SHA1}


@dataclass
class SchemeCheck:
    scheme: str
    present: bool = False
    errors: List[str] = field(default_factory=list)
    certificate: Optional[bytes] = None
    apk_signed: str = ""                # v1: X-Android-APK-Signed
    stripping_protected: bool = False   # v2: v3 is mandatory

    @property
    def ok(self) -> bool:
        return self.present and not self.errors


@dataclass
class VerificationReport:
    path: str
    checks: Dict[str, SchemeCheck] = field(default_factory=dict)
    alignment: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        present = [c for c in self.checks.values() if c.present]
        return bool(present) and all(c.ok for c in present) and not self.errors

    def scheme_ok(self, scheme: str) -> bool:
        check = self.checks.get(scheme)
        return check is not None and check.ok

    def lines(self) -> List[str]:
        out = []
        for name, c in self.checks.items():
            state = "absent" if not c.present else ("OK" if c.ok else "FAILED")
            out.append(f"{name}: {state}")
            out.extend(f"  {e}" for e in c.errors)
        out.extend(self.errors)
        out.extend(f"alignment: {a}" for a in self.alignment)
        return out


def _verify_raw(public_key, signature: bytes, data: bytes, hash_cls) -> None:
    if isinstance(public_key, rsa.RSAPublicKey):
        public_key.verify(signature, data, padding.PKCS1v15(), hash_cls())
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key.verify(signature, data, ec.ECDSA(hash_cls()))
    else:
        raise InvalidSignature(f"unsupported key type {type(public_key).__name__}")


# ═══════════════════════════════════════════════════════════════════════════════
#  v 1
# ═══════════════════════════════════════════════════════════════════════════════
def _sections(data: bytes) -> List[Tuple[Dict[str, str], bytes]]:
    """Split a manifest / .SF into (attributes, raw section bytes) pairs."""
    out, buf, lines = [], b"", []
    for line in data.splitlines(keepends=True):
        buf += line
        text = line.rstrip(b"\r\n")
        if not text:
            if lines:
                out.append((lines, buf))
            lines, buf = [], b""
        elif text.startswith(b" ") and lines:
            lines[-1] += text[1:]
        else:
            lines.append(text)
    if lines:
        out.append((lines, buf))
    parsed = []
    for lines, raw in out:
        attrs = {}
        for line in lines:
            key, _, value = line.decode("utf-8", "replace").partition(": ")
            attrs[key] = value
        parsed.append((attrs, raw))
    return parsed


def _entry_digest(attrs: Dict[str, str]) -> Tuple[Optional[str], Optional[str]]:
    for key, algo in (("SHA-256-Digest", "sha256"), ("SHA1-Digest", "sha1")):
        if key in attrs:
            return algo, attrs[key]
    return None, None


# ── minimal DER walker for the PKCS#7 SignerInfo ────────────────────────────
def _der(buf: bytes, pos: int) -> Tuple[int, int, int]:
    """(tag, content start, content end) of the TLV at `pos`."""
    tag, n = buf[pos], buf[pos + 1]
    if n & 0x80:
        k = n & 0x7F
        length = int.from_bytes(buf[pos + 2:pos + 2 + k], "big")
        start = pos + 2 + k
    else:
        length, start = n, pos + 2
    if start + length > len(buf):
        raise CorruptArchive("PKCS#7 structure is truncated")
    return tag, start, start + length


def _der_children(buf: bytes, start: int, end: int) -> List[Tuple[int, int, int, int]]:
    items, pos = [], start
    while pos < end:
        tag, cs, ce = _der(buf, pos)
        items.append((tag, pos, cs, ce))
        pos = ce
    return items


def _signer_info(block: bytes) -> Tuple[bytes, Optional[bytes], bytes, bytes]:
    """(digest OID, signed attrs TLV or None, signature, serial) of the first signer."""
    _, cs, ce = _der(block, 0)
    content_info = _der_children(block, cs, ce)
    _, _, sd_outer_s, sd_outer_e = content_info[1]
    _, sds, sde = _der(block, sd_outer_s)
    signed_data = _der_children(block, sds, sde)
    tag, _, sis, sie = signed_data[-1]
    if tag != 0x31:
        raise CorruptArchive("PKCS#7 SignedData has no SignerInfos")
    _, si_pos, _, _ = _der_children(block, sis, sie)[0]
    _, s, e = _der(block, si_pos)
    fields = _der_children(block, s, e)

    sid = fields[1]
    serial = b""
    if sid[0] == 0x30:
        issuer_serial = _der_children(block, sid[2], sid[3])
        serial = block[issuer_serial[1][2]:issuer_serial[1][3]]
    digest_alg = _der_children(block, fields[2][2], fields[2][3])[0]
    digest_oid = block[digest_alg[2]:digest_alg[3]]
    attrs = None
    rest = fields[3:]
    if rest and rest[0][0] == 0xA0:
        attrs = b"\x31" + block[rest[0][1] + 1:rest[0][3]]
        rest = rest[1:]
    signature = block[rest[1][2]:rest[1][3]]
    return digest_oid, attrs, signature, serial


def verify_pkcs7(block: bytes, content: bytes) -> bytes:
    """Check a detached PKCS#7 over `content`; returns the signer certificate (DER)."""
    try:
        certs = pkcs7.load_der_pkcs7_certificates(block)
        digest_oid, attrs, signature, serial = _signer_info(block)
    except (ValueError, IndexError) as exc:
        raise CorruptArchive(f"unreadable PKCS#7 block: {exc}") from exc
    if not certs:
        raise CorruptArchive("PKCS#7 block carries no certificate")
    hash_cls = _DIGESTS.get(digest_oid)
    if hash_cls is None:
        raise CorruptArchive(f"unsupported digest algorithm {digest_oid.hex()}")
    cert = next((c for c in certs
                 if serial and c.serial_number == int.from_bytes(serial, "big", signed=True)),
                 certs[0])
    signed = content
    if attrs is not None:
        h = hashes.Hash(hash_cls())
        h.update(content)
        if h.finalize() not in attrs:
            raise InvalidSignature("messageDigest attribute does not match")
        signed = attrs
    _verify_raw(cert.public_key(), signature, signed, hash_cls)
    return cert.public_bytes(serialization.Encoding.DER)


def verify_v1(path) -> SchemeCheck:
    check = SchemeCheck("v1")
    with ArchiveReader(path) as reader:
        blocks = signature_block_names(reader.names())
        if not reader.has(MANIFEST_MF) or not blocks:
            return check
        check.present = True
        manifest = reader.read(MANIFEST_MF)
        sections = _sections(manifest)
        by_name = {a.get("Name"): (a, raw) for a, raw in sections[1:]}

        for zi in reader.infos():
            name = zi.filename
            if name.endswith("/") or is_signature_entry(name):
                continue
            attrs, _ = by_name.pop(name, (None, None))
            if attrs is None:
                check.errors.append(f"{name}: not covered by {MANIFEST_MF}")
                continue
            algo, expected = _entry_digest(attrs)
            if algo is None:
                check.errors.append(f"{name}: no supported digest in {MANIFEST_MF}")
                continue
            h = hashlib.new(algo)
            for block in reader.iter_content(name):
                h.update(block)
            if base64.b64encode(h.digest()).decode() != expected:
                check.errors.append(f"{name}: digest mismatch")
        for name in by_name:
            check.errors.append(f"{name}: listed in {MANIFEST_MF} but missing from archive")

        block_name = blocks[0]
        sf_name = block_name.rsplit(".", 1)[0] + ".SF"
        if not reader.has(sf_name):
            check.errors.append(f"{sf_name}: missing")
            return check
        sf = reader.read(sf_name)
        try:
            check.certificate = verify_pkcs7(reader.read(block_name), sf)
        except (InvalidSignature, CorruptArchive) as exc:
            check.errors.append(f"{block_name}: signature does not verify ({exc})")

        sf_sections = _sections(sf)
        main = sf_sections[0][0]
        whole = main.get("SHA-256-Digest-Manifest")
        if whole != base64.b64encode(hashlib.sha256(manifest).digest()).decode():
            mf_raw = {a.get("Name"): raw for a, raw in sections[1:]}
            for attrs, _ in sf_sections[1:]:
                raw = mf_raw.get(attrs.get("Name"))
                digest = base64.b64encode(hashlib.sha256(raw or b"").digest()).decode()
                if raw is None or attrs.get("SHA-256-Digest") != digest:
                    check.errors.append(f"{sf_name}: section {attrs.get('Name')} mismatch")
        check.apk_signed = main.get("X-Android-APK-Signed", "")
    return check


# ═══════════════════════════════════════════════════════════════════════════════
#  v 2 / v 3
# ═══════════════════════════════════════════════════════════════════════════════
_BLOCK_ALGS = {SIG_RSA_PKCS1_V1_5_SHA256: hashes.SHA256, SIG_ECDSA_SHA256: hashes.SHA256}


def _verify_block_scheme(data: bytes, block, block_id: int, name: str) -> SchemeCheck:
    check = SchemeCheck(name)
    if block is None or block_id not in block.pairs:
        return check
    check.present = True
    v3 = block_id == V3_BLOCK_ID
    try:
        signers = parse_signers(block.pairs[block_id], v3=v3)
    except (CorruptArchive, IndexError, ValueError) as exc:
        check.errors.append(f"malformed signer: {exc}")
        return check
    if not signers:
        check.errors.append("no signers")
        return check
    content_digest = None
    for signer in signers:
        sigs = [(a, s) for a, s in signer.signatures if a in _BLOCK_ALGS]
        if not sigs:
            check.errors.append("no supported signature algorithm")
            continue
        alg, sig = sigs[0]
        try:
            pub = serialization.load_der_public_key(signer.public_key)
            _verify_raw(pub, sig, signer.signed_data, _BLOCK_ALGS[alg])
        except (InvalidSignature, ValueError) as exc:
            check.errors.append(f"signature does not verify ({exc or 'invalid'})")
            continue
        if not signer.certificates:
            check.errors.append("no certificate")
            continue
        cert = x509.load_der_x509_certificate(signer.certificates[0])
        cert_pub = cert.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
        if cert_pub != signer.public_key:
            check.errors.append("certificate does not match the signer's public key")
        check.certificate = signer.certificates[0]
        if [a for a, _ in signer.digests] != [a for a, _ in signer.signatures]:
            check.errors.append("digest and signature algorithm lists differ")
        digest = dict(signer.digests).get(alg)
        if content_digest is None:
            content_digest = chunked_digest(block_digest_regions(data, block))
        if digest != content_digest:
            check.errors.append("content digest mismatch")
        if v3 and signer.min_sdk is not None:
            inner = signer.signed_data
            if (signer.min_sdk, signer.max_sdk) != _inner_sdk(inner):
                check.errors.append("min/max SDK differ between signer and signed data")
        if not v3:
            check.stripping_protected = any(
                k == STRIPPING_PROTECTION_ATTR_ID for k, _ in signer.attributes)
    return check


def _inner_sdk(signed_data: bytes) -> Tuple[int, int]:
    """min/max SDK repeated inside v3 signed data, after digests and certificates."""
    pos = 0
    for _ in range(2):
        pos += 4 + struct.unpack_from("<I", signed_data, pos)[0]
    return struct.unpack_from("<II", signed_data, pos)


def verify_signing_block(path) -> List[SchemeCheck]:
    data = _read(path)
    block = find_signing_block(data)
    return [_verify_block_scheme(data, block, V2_BLOCK_ID, "v2"),
            _verify_block_scheme(data, block, V3_BLOCK_ID, "v3")]


def _read(path) -> bytes:
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as exc:
        raise IOFailure(f"{path}: {exc}") from exc


def verify_apk(path) -> VerificationReport:
    report = VerificationReport(str(path))
    try:
        v1 = verify_v1(path)
        v2, v3 = verify_signing_block(path)
        report.alignment = check_alignment(path)
    except (CorruptArchive, zipfile.BadZipFile) as exc:
        report.errors.append(str(exc))
        return report
    report.checks = {"v1": v1, "v2": v2, "v3": v3}

    # Rollback protection: schemes promised by newer signatures must be present
    for scheme in v1.apk_signed.replace(" ", "").split(","):
        if scheme and f"v{scheme}" in report.checks and not report.checks[f"v{scheme}"].present:
            report.errors.append(f"v1 declares scheme v{scheme} but it is missing")
    if v2.stripping_protected and not v3.present:
        report.errors.append("v2 requires v3 but the v3 signature is missing")
    return report
