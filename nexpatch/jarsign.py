"""
jarsign.py  ─  JAR signing (APK signature scheme v1)
═══════════════════════════════════════════════════════════════════════════════
    META-INF/MANIFEST.MF    SHA-256 of every entry's uncompressed content
    META-INF/<SIGNER>.SF    SHA-256 of the manifest and of each manifest section
    META-INF/<SIGNER>.RSA   detached PKCS#7 over the .SF (.EC for EC keys)

Runs on the StagedArchive, before the archive is frozen, so the whole-file
schemes later cover these entries too.
"""

import base64
import hashlib
import re
from typing import Dict, Iterable, List, Sequence, Tuple

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from nexpatch.archive import ArchiveReader, StagedArchive
from nexpatch.constants import CREATED_BY, DEFAULT_SIGNER_NAME
from nexpatch.errors import CorruptArchive
from nexpatch.keystore import SigningIdentity

MANIFEST_MF = "META-INF/MANIFEST.MF"

_SIG_ENTRY_RE = re.compile(r'^META-INF/(MANIFEST\.MF|[^/]+\.(SF|RSA|DSA|EC)|SIG-[^/]*)$',
                           re.IGNORECASE)
_BLOCK_ENTRY_RE = re.compile(r'^META-INF/[^/]+\.(RSA|DSA|EC)$', re.IGNORECASE)

_MAX_LINE = 70
_CRLF = b"\r\n"

SCHEME_V2_ID = 2
SCHEME_V3_ID = 3


def is_signature_entry(name: str) -> bool:
    return bool(_SIG_ENTRY_RE.match(name))


def strip_signatures(staged: StagedArchive) -> List[str]:
    """Drop every existing v1 signature file."""
    return staged.remove_where(is_signature_entry)


def _b64(digest: bytes) -> str:
    return base64.b64encode(digest).decode()


def _attr_line(key: str, value: str) -> bytes:
    """`key: value` wrapped at 70 bytes; continuation lines start with a space."""
    line = f"{key}: {value}".encode("utf-8")
    if len(line) <= _MAX_LINE:
        return line + _CRLF
    out = [line[:_MAX_LINE]]
    rest = line[_MAX_LINE:]
    while rest:
        out.append(b" " + rest[:_MAX_LINE - 1])
        rest = rest[_MAX_LINE - 1:]
    return _CRLF.join(out) + _CRLF


def _section(attrs: Iterable[Tuple[str, str]]) -> bytes:
    return b"".join(_attr_line(k, v) for k, v in attrs) + _CRLF


def digest_entries(staged: StagedArchive) -> Dict[str, str]:
    digests = {}
    for entry in staged.entries():
        if entry.name.endswith("/") or is_signature_entry(entry.name):
            continue
        h = hashlib.sha256()
        for block in entry.iter_content():
            h.update(block)
        digests[entry.name] = _b64(h.digest())
    return digests


def build_manifest(digests: Dict[str, str]) -> Tuple[bytes, bytes, Dict[str, bytes]]:
    """Returns (manifest, main section, per-entry sections)."""
    main = _section([("Manifest-Version", "1.0"), ("Created-By", CREATED_BY)])
    sections = {name: _section([("Name", name), ("SHA-256-Digest", digests[name])])
                for name in sorted(digests)}
    return main + b"".join(sections.values()), main, sections


def build_signature_file(manifest: bytes, main: bytes, sections: Dict[str, bytes],
                         apk_signed: Sequence[int] = ()) -> bytes:
    head = [("Signature-Version", "1.0"),
            ("Created-By", CREATED_BY),
            ("SHA-256-Digest-Manifest", _b64(hashlib.sha256(manifest).digest())),
            ("SHA-256-Digest-Manifest-Main-Attributes", _b64(hashlib.sha256(main).digest()))]
    if apk_signed:
        # Anti-stripping marker: verifiers must insist on these whole-file schemes
        head.append(("X-Android-APK-Signed", ", ".join(str(i) for i in apk_signed)))
    out = _section(head)
    for name, sec in sections.items():
        out += _section([("Name", name), ("SHA-256-Digest", _b64(hashlib.sha256(sec).digest()))])
    return out


def sign_signature_file(sf: bytes, identity: SigningIdentity) -> bytes:
    return (pkcs7.PKCS7SignatureBuilder()
            .set_data(sf)
            .add_signer(identity.certificate, identity.private_key, hashes.SHA256())
            .sign(serialization.Encoding.DER,
                  [pkcs7.PKCS7Options.DetachedSignature,
                   pkcs7.PKCS7Options.NoAttributes,
                   pkcs7.PKCS7Options.Binary]))


def signature_block_names(names: Iterable[str]) -> List[str]:
    return sorted(n for n in names if _BLOCK_ENTRY_RE.match(n))


def v1_certificates(path) -> List[bytes]:
    """DER certificates of the first v1 signature block, [] when there is none."""
    with ArchiveReader(path) as reader:
        blocks = signature_block_names(reader.names())
        if not blocks:
            return []
        try:
            certs = pkcs7.load_der_pkcs7_certificates(reader.read(blocks[0]))
        except ValueError as exc:
            raise CorruptArchive(f"{blocks[0]}: unreadable PKCS#7 block ({exc})") from exc
    return [c.public_bytes(serialization.Encoding.DER) for c in certs]


def sign_v1(staged: StagedArchive, identity: SigningIdentity,
            signer_name: str = DEFAULT_SIGNER_NAME, apk_signed: Sequence[int] = ()) -> List[str]:
    """Sign every staged entry; returns the names of the added signature entries."""
    strip_signatures(staged)
    manifest, main, sections = build_manifest(digest_entries(staged))
    sf = build_signature_file(manifest, main, sections, apk_signed)
    block = sign_signature_file(sf, identity)

    names = [MANIFEST_MF,
             f"META-INF/{signer_name}.SF",
             f"META-INF/{signer_name}.{identity.block_extension}"]
    for name, data in zip(names, (manifest, sf, block)):
        staged.put(name, data)
    return names
