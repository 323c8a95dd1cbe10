"""
archive.py  ─  package archive reader / writer
═══════════════════════════════════════════════════════════════════════════════
Reading:
  ArchiveReader wraps zipfile for the central directory, then walks every
  local header itself so that overlapping or truncated entries are caught
  before anything is copied. Unmodified entries are copied as their raw
  compressed bytes, never recompressed.

Writing (pure Python, every byte controlled here):

    [LFH 30B][filename][extra ← padding][DATA]  ...  [gap][CD][EOCD]

  • STORED entries are aligned by padding the local-header extra field:
        base_data_offset = pos + 30 + len(filename)
        pad = (alignment - base_data_offset % alignment) % alignment
  • resources.arsc and classes*.dex are always STORED (platform R+ rule).
  • `gap` is a zero-filled hole of a pre-computed size. The whole-file
    signature block is spliced into it after the archive is frozen, so no
    other offset ever moves.

Lifecycle:
  StagedArchive ──freeze()──▶ FrozenArchive ──splice()──▶ SignedArchive
                                   │                          │
                                   └──commit() (no gap) ──────┴──commit()──▶ final path
"""

import errno
import os
import re
import shutil
import struct
import tempfile
import zipfile
import zlib
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from nexpatch.constants import ORIGINAL_APK_ASSET_PATH, RESOURCES_ARSC
from nexpatch.errors import CorruptArchive, EntryNotFound, IOFailure

# ZIP magic bytes
_LFH  = b'PK\x03\x04'   # Local File Header
_CFH  = b'PK\x01\x02'   # Central Directory Header
_EOCD = b'PK\x05\x06'   # End of Central Directory

#  LFH  30 bytes: sig(4) ver(2) flag(2) comp(2) time(2) date(2) crc(4) csz(4) usz(4) fnl(2) exl(2)
_FMT_LFH  = '<4sHHHHHIIIHH'
#  CFH  46 bytes: sig(4) vmade(2) vneed(2) flag(2) comp(2) time(2) date(2)
#                 crc(4) csz(4) usz(4) fnl(2) exl(2) cml(2) dsk(2) iat(2) eat(4) off(4)
_FMT_CFH  = '<4sHHHHHHIIIHHHHHII'
# EOCD 22 bytes: sig(4) dsk(2) dsk_cd(2) ent(2) tot(2) cdsz(4) cdoff(4) cml(2)
_FMT_EOCD = '<4sHHHHIIH'
EOCD_CD_OFFSET_POS = 16

_ZIP32_MAX = 0xFFFFFFFF
_CHUNK     = 1 << 20

# Fixed timestamp for entries created by the engine (deterministic output)
NEW_ENTRY_DATE_TIME = (1981, 1, 1, 1, 1, 2)

_FORCE_STORE    = frozenset({RESOURCES_ARSC})
_FORCE_STORE_RE = re.compile(r'^classes\d*\.dex$')
DEX_RE          = re.compile(r'^classes\d*\.dex$')

DEFAULT_ALIGNMENT = 4
PAGE_ALIGNMENT    = 4096


def must_store(name: str) -> bool:
    return name in _FORCE_STORE or bool(_FORCE_STORE_RE.match(name))


def alignment_for(name: str, compress_type: int) -> int:
    """Data alignment of an entry; 0 when the entry is compressed."""
    if compress_type != zipfile.ZIP_STORED:
        return 0
    if name.endswith(".so") or name == ORIGINAL_APK_ASSET_PATH:
        return PAGE_ALIGNMENT
    return DEFAULT_ALIGNMENT


def _dos_datetime(dt) -> Tuple[int, int]:
    """ZipInfo.date_time → (dos_time, dos_date)."""
    y, mo, d, h, mi, s = (int(x) for x in dt)
    if y < 1980:
        y, mo, d, h, mi, s = 1980, 1, 1, 0, 0, 0
    return (h * 2048 + mi * 32 + s // 2, (y - 1980) * 512 + mo * 32 + d)


def _deflate(data: bytes) -> bytes:
    c = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    return c.compress(data) + c.flush()


# ═══════════════════════════════════════════════════════════════════════════════
#  R E A D E R
# ═══════════════════════════════════════════════════════════════════════════════
class ArchiveReader:
    """Random-access view of one input archive."""

    def __init__(self, path: os.PathLike):
        self.path = Path(path)
        try:
            self._zip = zipfile.ZipFile(self.path, 'r')
        except zipfile.BadZipFile as exc:
            raise CorruptArchive(f"{self.path.name}: not a zip container ({exc})") from exc
        except OSError as exc:
            raise IOFailure(f"{self.path}: {exc}") from exc
        try:
            self._fh = open(self.path, 'rb')
            self._infos: Dict[str, zipfile.ZipInfo] = OrderedDict()
            self._data_off: Dict[str, int] = {}
            self._scan()
        except BaseException:
            self.close()
            raise

    # ── layout validation ────────────────────────────────────────────────────
    def _scan(self) -> None:
        size = os.fstat(self._fh.fileno()).st_size
        cd_start = getattr(self._zip, "start_dir", size)
        ordered = sorted(self._zip.infolist(), key=lambda zi: zi.header_offset)
        for idx, zi in enumerate(ordered):
            if zi.filename in self._infos:
                raise CorruptArchive(f"{self.path.name}: duplicate entry {zi.filename!r}")
            if zi.flag_bits & 0x1:
                raise CorruptArchive(f"{self.path.name}: encrypted entry {zi.filename!r}")
            off = zi.header_offset
            self._fh.seek(off)
            hdr = self._fh.read(30)
            if len(hdr) < 30 or hdr[:4] != _LFH:
                raise CorruptArchive(
                    f"{self.path.name}: bad local header for {zi.filename!r} @ {off}")
            fname_len, extra_len = struct.unpack_from('<HH', hdr, 26)
            data_off = off + 30 + fname_len + extra_len
            data_end = data_off + zi.compress_size
            limit = ordered[idx + 1].header_offset if idx + 1 < len(ordered) else cd_start
            if data_end > limit or data_end > size:
                raise CorruptArchive(
                    f"{self.path.name}: entry {zi.filename!r} overlaps the next record "
                    f"(data ends @ {data_end}, next record @ {limit})")
            self._infos[zi.filename] = zi
            self._data_off[zi.filename] = data_off

    # ── queries ──────────────────────────────────────────────────────────────
    def names(self) -> List[str]:
        return list(self._infos)

    def infos(self) -> List[zipfile.ZipInfo]:
        return list(self._infos.values())

    def has(self, name: str) -> bool:
        return name in self._infos

    def info(self, name: str) -> zipfile.ZipInfo:
        try:
            return self._infos[name]
        except KeyError:
            raise EntryNotFound(f"{self.path.name}: no entry {name!r}") from None

    def data_offset(self, name: str) -> int:
        self.info(name)
        return self._data_off[name]

    def read(self, name: str) -> bytes:
        """Uncompressed content of an entry."""
        zi = self.info(name)
        try:
            return self._zip.read(zi)
        except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
            raise CorruptArchive(f"{self.path.name}: cannot inflate {name!r} ({exc})") from exc

    def iter_content(self, name: str, chunk: int = _CHUNK) -> Iterator[bytes]:
        zi = self.info(name)
        try:
            with self._zip.open(zi) as src:
                while True:
                    block = src.read(chunk)
                    if not block:
                        break
                    yield block
        except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
            raise CorruptArchive(f"{self.path.name}: cannot inflate {name!r} ({exc})") from exc

    def read_raw(self, name: str) -> bytes:
        """Entry payload exactly as stored (compressed bytes)."""
        zi = self.info(name)
        self._fh.seek(self._data_off[name])
        return self._fh.read(zi.compress_size)

    def copy_raw(self, name: str, out: BinaryIO) -> None:
        zi = self.info(name)
        self._fh.seek(self._data_off[name])
        remaining = zi.compress_size
        while remaining:
            block = self._fh.read(min(_CHUNK, remaining))
            if not block:
                raise CorruptArchive(f"{self.path.name}: truncated entry {name!r}")
            out.write(block)
            remaining -= len(block)

    def close(self) -> None:
        fh = getattr(self, "_fh", None)
        if fh is not None:
            fh.close()
        self._zip.close()

    def __enter__(self) -> "ArchiveReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ArchiveSet:
    """All archives of one logical app: base first, then splits."""

    def __init__(self, readers: Sequence[ArchiveReader]):
        self.readers = list(readers)

    @property
    def base(self) -> ArchiveReader:
        return self.readers[0]

    @property
    def splits(self) -> List[ArchiveReader]:
        return self.readers[1:]

    def close(self) -> None:
        for r in self.readers:
            r.close()

    def __enter__(self) -> "ArchiveSet":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def open_archives(paths: Sequence[os.PathLike]) -> ArchiveSet:
    readers: List[ArchiveReader] = []
    try:
        for p in paths:
            readers.append(ArchiveReader(p))
    except BaseException:
        for r in readers:
            r.close()
        raise
    return ArchiveSet(readers)


# ═══════════════════════════════════════════════════════════════════════════════
#  S T A G E D   E N T R I E S
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass
class ArchiveEntry:
    """
    One entry staged for output. Content comes from exactly one of:
      source  → raw copy of the same-named entry in an input archive
      payload → bytes already in final (possibly deflated) form
      file    → a whole file stored uncompressed
    """
    name: str
    compress_type: int
    crc: int
    compress_size: int
    file_size: int
    date_time: Tuple[int, ...] = NEW_ENTRY_DATE_TIME
    external_attr: int = 0
    flag_bits: int = 0
    source: Optional[ArchiveReader] = None
    source_name: Optional[str] = None
    payload: Optional[bytes] = None
    content: Optional[bytes] = None
    file: Optional[Path] = None

    @property
    def alignment(self) -> int:
        return alignment_for(self.name, self.compress_type)

    @property
    def copied(self) -> bool:
        return self.source is not None

    def iter_content(self) -> Iterator[bytes]:
        """Uncompressed bytes, streamed."""
        if self.source is not None:
            yield from self.source.iter_content(self.source_name)
        elif self.file is not None:
            with open(self.file, 'rb') as fh:
                while True:
                    block = fh.read(_CHUNK)
                    if not block:
                        break
                    yield block
        else:
            yield self.content

    def write_payload(self, out: BinaryIO) -> None:
        if self.source is not None:
            self.source.copy_raw(self.source_name, out)
        elif self.file is not None:
            with open(self.file, 'rb') as fh:
                shutil.copyfileobj(fh, out, _CHUNK)
        else:
            out.write(self.payload)


def _file_crc(path: Path) -> Tuple[int, int]:
    crc, size = 0, 0
    with open(path, 'rb') as fh:
        while True:
            block = fh.read(_CHUNK)
            if not block:
                break
            crc = zlib.crc32(block, crc)
            size += len(block)
    return crc & 0xFFFFFFFF, size


class StagedArchive:
    """Ordered, mutable set of output entries. Replacing keeps an entry's slot."""

    def __init__(self):
        self._entries: "OrderedDict[str, ArchiveEntry]" = OrderedDict()

    # ── population ───────────────────────────────────────────────────────────
    def copy_from(self, reader: ArchiveReader,
                  exclude: Optional[Callable[[str], bool]] = None) -> int:
        n = 0
        for zi in reader.infos():
            if zi.filename.endswith('/') or (exclude and exclude(zi.filename)):
                continue
            if must_store(zi.filename) and zi.compress_type != zipfile.ZIP_STORED:
                data = reader.read(zi.filename)
                entry = ArchiveEntry(
                    zi.filename, zipfile.ZIP_STORED, zi.CRC, len(data), len(data),
                    date_time=zi.date_time, external_attr=zi.external_attr,
                    flag_bits=zi.flag_bits, payload=data, content=data)
            else:
                entry = ArchiveEntry(
                    zi.filename, zi.compress_type, zi.CRC, zi.compress_size, zi.file_size,
                    date_time=zi.date_time, external_attr=zi.external_attr,
                    flag_bits=zi.flag_bits, source=reader, source_name=zi.filename)
            self._entries[zi.filename] = entry
            n += 1
        return n

    def put(self, name: str, data: bytes, compress: bool = True,
            date_time: Tuple[int, ...] = NEW_ENTRY_DATE_TIME) -> ArchiveEntry:
        if must_store(name) or name.endswith(".so"):
            compress = False
        payload = _deflate(data) if compress else data
        entry = ArchiveEntry(
            name, zipfile.ZIP_DEFLATED if compress else zipfile.ZIP_STORED,
            zlib.crc32(data) & 0xFFFFFFFF, len(payload), len(data),
            date_time=date_time, external_attr=0o644 << 16,
            payload=payload, content=data)
        self._entries[name] = entry
        return entry

    def put_file(self, name: str, path: os.PathLike) -> ArchiveEntry:
        """Store a whole file uncompressed (embedded archives)."""
        path = Path(path)
        try:
            crc, size = _file_crc(path)
        except OSError as exc:
            raise IOFailure(f"{path}: {exc}") from exc
        entry = ArchiveEntry(name, zipfile.ZIP_STORED, crc, size, size,
                             external_attr=0o644 << 16, file=path)
        self._entries[name] = entry
        return entry

    def remove(self, name: str) -> bool:
        return self._entries.pop(name, None) is not None

    def remove_where(self, pred: Callable[[str], bool]) -> List[str]:
        gone = [n for n in self._entries if pred(n)]
        for n in gone:
            del self._entries[n]
        return gone

    # ── queries ──────────────────────────────────────────────────────────────
    def has(self, name: str) -> bool:
        return name in self._entries

    def get(self, name: str) -> ArchiveEntry:
        try:
            return self._entries[name]
        except KeyError:
            raise EntryNotFound(f"staged archive has no entry {name!r}") from None

    def read(self, name: str) -> bytes:
        return b"".join(self.get(name).iter_content())

    def names(self) -> List[str]:
        return list(self._entries)

    def entries(self) -> List[ArchiveEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    # ── output ───────────────────────────────────────────────────────────────
    def freeze(self, path: os.PathLike, reserve: int = 0) -> "FrozenArchive":
        """
        Write every entry, a `reserve`-byte hole, the central directory and
        the EOCD to `path`. After this no entry can be added or changed.
        """
        path = Path(path)
        entries = self.entries()
        if len(entries) > 0xFFFF:
            raise IOFailure(f"{len(entries)} entries exceed the non-zip64 limit")
        cd_entries: List[bytes] = []
        try:
            with open(path, 'wb') as out:
                for e in entries:
                    fname_b = e.name.encode('utf-8')
                    pos = out.tell()
                    if pos > _ZIP32_MAX or e.file_size > _ZIP32_MAX:
                        raise IOFailure(f"{e.name}: archive exceeds the non-zip64 size limit")

                    # ── alignment padding (STORE entries only) ───────────
                    extra = b''
                    if e.alignment:
                        base_data_off = pos + 30 + len(fname_b)
                        rem = base_data_off % e.alignment
                        if rem:
                            extra = b'\x00' * (e.alignment - rem)

                    dt, dd = _dos_datetime(e.date_time)
                    # Clear data-descriptor bit (3); UTF-8 flag (11) only for non-ASCII names
                    flags = e.flag_bits & ~0x08 & ~0x800
                    if not e.name.isascii():
                        flags |= 0x800

                    out.write(struct.pack(_FMT_LFH,
                        _LFH, 20, flags, e.compress_type, dt, dd,
                        e.crc, e.compress_size, e.file_size, len(fname_b), len(extra)))
                    out.write(fname_b)
                    out.write(extra)
                    e.write_payload(out)

                    cd_entries.append(struct.pack(_FMT_CFH,
                        _CFH,
                        (3 << 8) | 20,   # version made by: Unix host, v2.0
                        20,              # version needed: 2.0
                        flags, e.compress_type, dt, dd,
                        e.crc, e.compress_size, e.file_size,
                        len(fname_b), 0, 0,    # fname_len, extra_len(CD), comment_len
                        0, 0,                  # disk_start, internal_attr
                        e.external_attr,
                        pos) + fname_b)

                entries_end = out.tell()
                if reserve:
                    out.write(b'\x00' * reserve)
                cd = b''.join(cd_entries)
                cd_offset = entries_end + reserve
                if cd_offset > _ZIP32_MAX:
                    raise IOFailure("archive exceeds the non-zip64 size limit")
                eocd = struct.pack(_FMT_EOCD, _EOCD, 0, 0, len(cd_entries), len(cd_entries),
                                   len(cd), cd_offset, 0)
                out.write(cd)
                out.write(eocd)
        except OSError as exc:
            raise IOFailure(f"{path}: {exc}") from exc
        return FrozenArchive(path, entries_end, reserve, cd, eocd)


# ═══════════════════════════════════════════════════════════════════════════════
#  F R O Z E N   /   S I G N E D
# ═══════════════════════════════════════════════════════════════════════════════
def _move_into_place(tmp: Path, final: Path) -> Path:
    final.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(tmp, final)
        return final
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
    # Different filesystem: copy beside the target, then rename over it
    fd, name = tempfile.mkstemp(prefix=f".{final.stem}-", suffix=".tmp", dir=str(final.parent))
    staging = Path(name)
    try:
        with os.fdopen(fd, 'wb') as out, open(tmp, 'rb') as src:
            shutil.copyfileobj(src, out, _CHUNK)
        os.replace(staging, final)
    except OSError:
        staging.unlink(missing_ok=True)
        raise
    tmp.unlink()
    return final


class FrozenArchive:
    """A fully written archive whose byte layout can no longer change."""

    def __init__(self, path: Path, entries_end: int, reserve: int, cd: bytes, eocd: bytes):
        self.path = path
        self.entries_end = entries_end
        self.reserve = reserve
        self.central_directory = cd
        self.eocd = eocd

    def eocd_for_digest(self) -> bytes:
        """EOCD as if the central directory started where the signing block will."""
        buf = bytearray(self.eocd)
        struct.pack_into('<I', buf, EOCD_CD_OFFSET_POS, self.entries_end)
        return bytes(buf)

    def iter_entries_region(self, chunk: int = _CHUNK) -> Iterator[bytes]:
        with open(self.path, 'rb') as fh:
            remaining = self.entries_end
            while remaining:
                block = fh.read(min(chunk, remaining))
                if not block:
                    raise IOFailure(f"{self.path}: truncated while digesting")
                yield block
                remaining -= len(block)

    def splice(self, block: bytes) -> "SignedArchive":
        if len(block) != self.reserve:
            raise IOFailure(
                f"signing block is {len(block)} bytes, {self.reserve} were reserved")
        try:
            with open(self.path, 'r+b') as fh:
                fh.seek(self.entries_end)
                fh.write(block)
        except OSError as exc:
            raise IOFailure(f"{self.path}: {exc}") from exc
        return SignedArchive(self.path)

    def commit(self, final: os.PathLike) -> Path:
        if self.reserve:
            raise IOFailure("reserved signing block was never written")
        return SignedArchive(self.path).commit(final)


class SignedArchive:
    def __init__(self, path: Path):
        self.path = path

    def commit(self, final: os.PathLike) -> Path:
        try:
            return _move_into_place(self.path, Path(final))
        except OSError as exc:
            raise IOFailure(f"{final}: {exc}") from exc


def temp_archive_path(directory: Optional[os.PathLike], stem: str) -> Path:
    fd, name = tempfile.mkstemp(prefix=f".{stem}-", suffix=".tmp",
                                dir=str(directory) if directory else None)
    os.close(fd)
    return Path(name)


# ═══════════════════════════════════════════════════════════════════════════════
#  A U D I T
# ═══════════════════════════════════════════════════════════════════════════════
def check_alignment(apk: os.PathLike) -> List[str]:
    """
    Audit STORED entries: must-store names are really STORED, and every
    STORED entry's data starts on its required boundary. Returns issues.
    """
    issues: List[str] = []
    with ArchiveReader(apk) as reader:
        for zi in reader.infos():
            if must_store(zi.filename) and zi.compress_type != zipfile.ZIP_STORED:
                issues.append(f"{zi.filename}: DEFLATE (must be STORE)")
                continue
            want = alignment_for(zi.filename, zi.compress_type)
            if not want or zi.file_size == 0:
                continue
            data_off = reader.data_offset(zi.filename)
            if data_off % want:
                issues.append(f"{zi.filename}: data@{data_off} not {want}-byte aligned")
    return issues
