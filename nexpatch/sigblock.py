"""
sigblock.py  ─  APK Signing Block (schemes v2 and v3)
═══════════════════════════════════════════════════════════════════════════════
Placement:

    [entries ...][APK Signing Block][Central Directory][EOCD]

Block layout (little endian):

    u64 size                       (everything after this field)
    { u64 len, u32 id, value } *   id-value pairs
    u64 size
    "APK Sig Block 42"

Content digest (shared by v2 and v3): each of the three regions
  [0, block start)   central directory   EOCD (CD offset = block start)
is cut into 1 MiB chunks;
  chunk  = sha256(0xa5 | u32 len | data)
  top    = sha256(0x5a | u32 count | chunk digests)

The writer reserves a gap before the central directory, computes the
digest over the frozen archive, then fills the gap with a block padded to
exactly the reserved size (pair 0x42726577), so no offset moves.
"""

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from nexpatch.archive import EOCD_CD_OFFSET_POS, FrozenArchive, SignedArchive
from nexpatch.constants import V3_MIN_SDK
from nexpatch.errors import CorruptArchive, IOFailure
from nexpatch.jarsign import v1_certificates
from nexpatch.keystore import SigningIdentity

log = logging.getLogger(__name__)

APK_SIG_BLOCK_MAGIC = b"APK Sig Block 42"
V2_BLOCK_ID         = 0x7109871a
V3_BLOCK_ID         = 0xf05368c0
PADDING_BLOCK_ID    = 0x42726577

STRIPPING_PROTECTION_ATTR_ID = 0xbeeff00d
V3_MAX_SDK                   = 0x7fffffff

CHUNK_SIZE    = 1 << 20
BLOCK_ALIGN   = 4096
_EOCD_SIZE    = 22
_MIN_PAD_PAIR = 12


def _lp(data: bytes) -> bytes:
    return struct.pack("<I", len(data)) + data


def _lp_seq(items) -> bytes:
    return _lp(b"".join(_lp(i) for i in items))


# ═══════════════════════════════════════════════════════════════════════════════
#  D I G E S T
# ═══════════════════════════════════════════════════════════════════════════════
def _chunks(stream: Iterator[bytes]) -> Iterator[bytes]:
    buf = b""
    for block in stream:
        buf += block
        while len(buf) >= CHUNK_SIZE:
            yield buf[:CHUNK_SIZE]
            buf = buf[CHUNK_SIZE:]
    if buf:
        yield buf


def chunked_digest(regions: List[Iterator[bytes]]) -> bytes:
    digests = []
    for region in regions:
        for chunk in _chunks(region):
            h = hashlib.sha256(b"\xa5" + struct.pack("<I", len(chunk)))
            h.update(chunk)
            digests.append(h.digest())
    top = hashlib.sha256(b"\x5a" + struct.pack("<I", len(digests)))
    for d in digests:
        top.update(d)
    return top.digest()


def frozen_digest(frozen: FrozenArchive) -> bytes:
    return chunked_digest([frozen.iter_entries_region(),
                           iter([frozen.central_directory]),
                           iter([frozen.eocd_for_digest()])])


# ═══════════════════════════════════════════════════════════════════════════════
#  B U I L D
# ═══════════════════════════════════════════════════════════════════════════════
def _signed_data_v2(identity: SigningIdentity, digest: bytes, with_v3: bool) -> bytes:
    alg = identity.signature_algorithm_id
    attrs = []
    if with_v3:
        attrs.append(struct.pack("<I", STRIPPING_PROTECTION_ATTR_ID) + struct.pack("<I", 3))
    return (_lp_seq([struct.pack("<I", alg) + _lp(digest)])
            + _lp_seq([identity.certificate_der])
            + _lp_seq(attrs))


def _signed_data_v3(identity: SigningIdentity, digest: bytes) -> bytes:
    alg = identity.signature_algorithm_id
    return (_lp_seq([struct.pack("<I", alg) + _lp(digest)])
            + _lp_seq([identity.certificate_der])
            + struct.pack("<II", V3_MIN_SDK, V3_MAX_SDK)
            + _lp_seq([]))


def _signatures(identity: SigningIdentity, signed_data: bytes, signature: Optional[bytes]) -> bytes:
    sig = identity.sign(signed_data) if signature is None else signature
    return _lp_seq([struct.pack("<I", identity.signature_algorithm_id) + _lp(sig)])


def scheme_values(identity: SigningIdentity, digest: bytes, v2: bool, v3: bool,
                  placeholder_sig: Optional[bytes] = None) -> List[Tuple[int, bytes]]:
    """(block id, value) pairs. `placeholder_sig` skips signing (size estimation)."""
    pairs = []
    pub = identity.public_key_der
    if v2:
        sd = _signed_data_v2(identity, digest, v3)
        signer = _lp(sd) + _signatures(identity, sd, placeholder_sig) + _lp(pub)
        pairs.append((V2_BLOCK_ID, _lp(_lp(signer))))
    if v3:
        sd = _signed_data_v3(identity, digest)
        signer = (_lp(sd) + struct.pack("<II", V3_MIN_SDK, V3_MAX_SDK)
                  + _signatures(identity, sd, placeholder_sig) + _lp(pub))
        pairs.append((V3_BLOCK_ID, _lp(_lp(signer))))
    return pairs


def _pair(block_id: int, value: bytes) -> bytes:
    return struct.pack("<QI", 4 + len(value), block_id) + value


def assemble_block(pairs: List[Tuple[int, bytes]], size: Optional[int] = None) -> bytes:
    """Wrap id-value pairs; with `size`, pad with a padding pair to exactly that many bytes."""
    body = b"".join(_pair(i, v) for i, v in pairs)
    natural = 8 + len(body) + 8 + 16
    if size is not None and size != natural:
        pad = size - natural
        if pad < _MIN_PAD_PAIR:
            raise IOFailure(f"signing block needs {natural} bytes, only {size} reserved")
        body += _pair(PADDING_BLOCK_ID, b"\x00" * (pad - _MIN_PAD_PAIR))
    total = 8 + len(body) + 8 + 16
    return struct.pack("<Q", total - 8) + body + struct.pack("<Q", total - 8) + APK_SIG_BLOCK_MAGIC


def estimate_reserve(identity: SigningIdentity, v2: bool, v3: bool) -> int:
    """Bytes to reserve for the block: worst case + a padding pair, page rounded."""
    if not (v2 or v3):
        return 0
    worst = assemble_block(scheme_values(identity, b"\x00" * 32, v2, v3,
                                         placeholder_sig=b"\x00" * identity.max_signature_size))
    need = len(worst) + _MIN_PAD_PAIR
    return (need + BLOCK_ALIGN - 1) // BLOCK_ALIGN * BLOCK_ALIGN


def sign_frozen(frozen: FrozenArchive, identity: SigningIdentity,
                v2: bool, v3: bool) -> SignedArchive:
    digest = frozen_digest(frozen)
    block = assemble_block(scheme_values(identity, digest, v2, v3), frozen.reserve)
    log.debug("signing block: %d bytes, digest %s", len(block), digest.hex())
    return frozen.splice(block)


# ═══════════════════════════════════════════════════════════════════════════════
#  P A R S E
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass
class SigningBlock:
    offset: int                 # file offset of the block's first byte
    cd_offset: int
    cd_size: int
    eocd_offset: int
    pairs: Dict[int, bytes] = field(default_factory=dict)


def _read_eocd(data: bytes) -> Tuple[int, int, int]:
    pos = data.rfind(b"PK\x05\x06", max(0, len(data) - 0xFFFF - _EOCD_SIZE))
    if pos < 0:
        raise CorruptArchive("end of central directory not found")
    cd_size, cd_offset = struct.unpack_from("<II", data, pos + 12)
    return pos, cd_offset, cd_size


def find_signing_block(data: bytes) -> Optional[SigningBlock]:
    eocd, cd_offset, cd_size = _read_eocd(data)
    if cd_offset < 32 or data[cd_offset - 16:cd_offset] != APK_SIG_BLOCK_MAGIC:
        return None
    size = struct.unpack_from("<Q", data, cd_offset - 24)[0]
    start = cd_offset - size - 8
    if start < 0 or struct.unpack_from("<Q", data, start)[0] != size:
        raise CorruptArchive("APK signing block size fields disagree")
    pairs = {}
    pos, end = start + 8, cd_offset - 24
    while pos < end:
        length, block_id = struct.unpack_from("<QI", data, pos)
        if length < 4 or pos + 8 + length > end:
            raise CorruptArchive("APK signing block pair runs past the block")
        pairs[block_id] = data[pos + 12:pos + 8 + length]
        pos += 8 + length
    return SigningBlock(start, cd_offset, cd_size, eocd, pairs)


def _take_lp(buf: bytes, pos: int) -> Tuple[bytes, int]:
    n = struct.unpack_from("<I", buf, pos)[0]
    if pos + 4 + n > len(buf):
        raise CorruptArchive("length-prefixed field runs past its parent")
    return buf[pos + 4:pos + 4 + n], pos + 4 + n


def iter_lp(buf: bytes) -> Iterator[bytes]:
    pos = 0
    while pos < len(buf):
        item, pos = _take_lp(buf, pos)
        yield item


@dataclass
class ParsedSigner:
    signed_data: bytes
    digests: List[Tuple[int, bytes]]
    certificates: List[bytes]
    attributes: List[Tuple[int, bytes]]
    signatures: List[Tuple[int, bytes]]
    public_key: bytes
    min_sdk: Optional[int] = None
    max_sdk: Optional[int] = None


def parse_signers(value: bytes, v3: bool = False) -> List[ParsedSigner]:
    """Decode the signer sequence of a v2 (or v3) block value."""
    signers_seq, _ = _take_lp(value, 0)
    out = []
    for signer in iter_lp(signers_seq):
        sd, pos = _take_lp(signer, 0)
        min_sdk = max_sdk = None
        if v3:
            min_sdk, max_sdk = struct.unpack_from("<II", signer, pos)
            pos += 8
        sigs, pos = _take_lp(signer, pos)
        pub, pos = _take_lp(signer, pos)

        digests_seq, p = _take_lp(sd, 0)
        certs_seq, p = _take_lp(sd, p)
        if v3:
            p += 8
        attrs_seq, p = _take_lp(sd, p)

        def pairs(seq, lp_value=True):
            items = []
            for item in iter_lp(seq):
                key = struct.unpack_from("<I", item, 0)[0]
                items.append((key, _take_lp(item, 4)[0] if lp_value else item[4:]))
            return items

        out.append(ParsedSigner(sd, pairs(digests_seq), list(iter_lp(certs_seq)),
                                pairs(attrs_seq, lp_value=False), pairs(sigs), pub,
                                min_sdk, max_sdk))
    return out


def block_digest_regions(data: bytes, block: SigningBlock) -> List[Iterator[bytes]]:
    eocd = bytearray(data[block.eocd_offset:])
    struct.pack_into("<I", eocd, EOCD_CD_OFFSET_POS, block.offset)
    return [iter([data[:block.offset]]),
            iter([data[block.cd_offset:block.cd_offset + block.cd_size]]),
            iter([bytes(eocd)])]


def original_signature(path) -> Optional[str]:
    """Hex DER of the first signer certificate: v2, then v3, then v1; None if unsigned."""
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except OSError as exc:
        raise IOFailure(f"{path}: {exc}") from exc
    block = find_signing_block(data)
    if block is not None:
        for block_id in (V2_BLOCK_ID, V3_BLOCK_ID):
            if block_id in block.pairs:
                signers = parse_signers(block.pairs[block_id], v3=block_id == V3_BLOCK_ID)
                if signers and signers[0].certificates:
                    return signers[0].certificates[0].hex()
    certs = v1_certificates(path)
    return certs[0].hex() if certs else None
