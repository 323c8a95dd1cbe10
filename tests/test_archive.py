"""Archive reader validation, staged writes, alignment and the reserved signing gap."""

from __future__ import annotations

import errno
import os
import shutil
import struct
import zipfile
from pathlib import Path

import pytest

from nexpatch.archive import (ArchiveReader, SignedArchive, StagedArchive, alignment_for,
                              check_alignment, must_store, open_archives, temp_archive_path)
from nexpatch.errors import CorruptArchive, EntryNotFound, IOFailure

from tests.builders import app_manifest, write_apk


@pytest.fixture
def apk(tmp_path: Path) -> Path:
    return write_apk(tmp_path / "a.apk", app_manifest(),
                     [("lib/x86/libfoo.so", b"\x7fELF" * 300, zipfile.ZIP_STORED),
                      ("assets/origin.txt", b"hello", zipfile.ZIP_STORED)])


class TestRules:
    def test_must_store(self):
        assert must_store("resources.arsc")
        assert must_store("classes.dex")
        assert must_store("classes12.dex")
        assert not must_store("assets/classes.dex")
        assert not must_store("res/raw/a.bin")

    def test_alignment_rules(self):
        assert alignment_for("lib/arm64-v8a/libx.so", zipfile.ZIP_STORED) == 4096
        assert alignment_for("assets/nexpatch/origin.apk", zipfile.ZIP_STORED) == 4096
        assert alignment_for("res/raw/a.bin", zipfile.ZIP_STORED) == 4
        assert alignment_for("res/raw/a.bin", zipfile.ZIP_DEFLATED) == 0


class TestReader:
    def test_reads_entries(self, apk):
        with ArchiveReader(apk) as reader:
            assert reader.has("AndroidManifest.xml")
            assert reader.read("assets/origin.txt") == b"hello"
            assert b"".join(reader.iter_content("assets/origin.txt")) == b"hello"
            with pytest.raises(EntryNotFound):
                reader.info("missing")

    def test_not_a_zip(self, tmp_path):
        bad = tmp_path / "bad.apk"
        bad.write_bytes(b"not a zip at all")
        with pytest.raises(CorruptArchive):
            ArchiveReader(bad)

    def test_missing_file(self, tmp_path):
        with pytest.raises(IOFailure):
            ArchiveReader(tmp_path / "absent.apk")

    def test_overlapping_entries_rejected(self, tmp_path):
        path = tmp_path / "overlap.apk"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("a.txt", b"A" * 100, compress_type=zipfile.ZIP_STORED)
            zf.writestr("b.txt", b"B" * 100, compress_type=zipfile.ZIP_STORED)
        data = bytearray(path.read_bytes())
        cd = data.find(b"PK\x01\x02")
        # first central record: claim a compressed size that runs into b.txt
        struct.pack_into("<I", data, cd + 20, 150)
        path.write_bytes(bytes(data))
        with pytest.raises(CorruptArchive, match="overlaps"):
            ArchiveReader(path)

    def test_open_archives_closes_on_failure(self, apk, tmp_path):
        bad = tmp_path / "bad.apk"
        bad.write_bytes(b"garbage")
        with pytest.raises(CorruptArchive):
            open_archives([apk, bad])


class TestStagedWrite:
    def test_freeze_copies_raw_and_aligns(self, apk, tmp_path):
        out = tmp_path / "out.apk"
        with ArchiveReader(apk) as reader:
            staged = StagedArchive()
            staged.copy_from(reader)
            staged.put("assets/new.txt", b"x" * 3, compress=False)
            staged.put("lib/x86/libnew.so", b"\x7fELF" * 10)
            staged.freeze(out).commit(out)
            raw_before = reader.read_raw("res/layout/main.xml")

        assert check_alignment(out) == []
        with ArchiveReader(out) as written:
            assert written.read_raw("res/layout/main.xml") == raw_before
            assert written.info("classes.dex").compress_type == zipfile.ZIP_STORED
            assert written.info("lib/x86/libnew.so").compress_type == zipfile.ZIP_STORED
            assert written.info("assets/new.txt").date_time == (1981, 1, 1, 1, 1, 2)
            assert written.read("assets/new.txt") == b"xxx"
        with zipfile.ZipFile(out) as zf:
            assert zf.testzip() is None

    def test_replacing_keeps_slot(self, apk):
        with ArchiveReader(apk) as reader:
            staged = StagedArchive()
            staged.copy_from(reader)
            order = staged.names()
            staged.put("AndroidManifest.xml", b"new")
            assert staged.names() == order
            assert staged.read("AndroidManifest.xml") == b"new"

    def test_reserved_gap_and_splice(self, apk, tmp_path):
        tmp = temp_archive_path(tmp_path, "x")
        with ArchiveReader(apk) as reader:
            staged = StagedArchive()
            staged.copy_from(reader)
            frozen = staged.freeze(tmp, reserve=4096)
        assert (frozen.central_directory + frozen.eocd) == tmp.read_bytes()[-len(frozen.central_directory) - 22:]
        cd_offset = struct.unpack_from("<I", frozen.eocd, 16)[0]
        assert cd_offset == frozen.entries_end + 4096
        assert struct.unpack_from("<I", frozen.eocd_for_digest(), 16)[0] == frozen.entries_end

        with pytest.raises(IOFailure):
            frozen.commit(tmp_path / "never.apk")
        with pytest.raises(IOFailure):
            frozen.splice(b"\x00" * 10)

        final = frozen.splice(b"\x01" * 4096).commit(tmp_path / "final.apk")
        assert not tmp.exists()
        data = final.read_bytes()
        assert data[frozen.entries_end:frozen.entries_end + 4096] == b"\x01" * 4096
        with zipfile.ZipFile(final) as zf:
            assert zf.testzip() is None

    def test_put_file_is_stored_whole(self, apk, tmp_path):
        out = tmp_path / "embed.apk"
        staged = StagedArchive()
        staged.put_file("assets/nexpatch/origin.apk", apk)
        staged.freeze(out).commit(out)
        with ArchiveReader(out) as reader:
            assert reader.info("assets/nexpatch/origin.apk").compress_type == zipfile.ZIP_STORED
            assert reader.data_offset("assets/nexpatch/origin.apk") % 4096 == 0
            assert reader.read("assets/nexpatch/origin.apk") == apk.read_bytes()


class TestCommit:
    @pytest.fixture
    def cross_device(self, monkeypatch):
        """os.replace refuses to move the source archive, as across file systems."""
        real_replace = os.replace
        refused = []

        def replace(src, dst):
            if Path(src).name.startswith(".src-"):
                refused.append(src)
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", replace)
        return refused

    def test_cross_device_copies_then_renames(self, apk, tmp_path, cross_device):
        src = temp_archive_path(tmp_path, "src")
        src.write_bytes(apk.read_bytes())
        final = SignedArchive(src).commit(tmp_path / "out" / "final.apk")
        assert cross_device == [src]
        assert final.read_bytes() == apk.read_bytes()
        assert not src.exists()
        assert [p.name for p in final.parent.iterdir()] == ["final.apk"]

    def test_cross_device_failure_leaves_no_partial_file(self, apk, tmp_path, cross_device,
                                                         monkeypatch):
        src = temp_archive_path(tmp_path, "src")
        src.write_bytes(apk.read_bytes())

        def broken_copy(fsrc, fdst, length=0):
            fdst.write(fsrc.read(100))
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(shutil, "copyfileobj", broken_copy)
        with pytest.raises(IOFailure):
            SignedArchive(src).commit(tmp_path / "out" / "final.apk")
        assert list((tmp_path / "out").iterdir()) == []
        assert src.exists()
