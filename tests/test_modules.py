"""Module validation and embedding."""

from __future__ import annotations

import shutil

import pytest

from nexpatch.archive import ArchiveReader, StagedArchive
from nexpatch.errors import NotAXposedModule
from nexpatch.modules import ModuleEmbedder, extract_embedded_modules, validate_module
from nexpatch.request import EMBEDDED, REJECTED, SKIPPED, LoadingMode


class TestValidate:
    def test_meta_data_module(self, module_a):
        assert validate_module(module_a) == "com.example.a"

    def test_init_list_module(self, module_b):
        assert validate_module(module_b) == "com.example.b"

    def test_plain_app_rejected(self, not_a_module):
        with pytest.raises(NotAXposedModule):
            validate_module(not_a_module)

    def test_garbage_rejected(self, tmp_path):
        junk = tmp_path / "junk.apk"
        junk.write_bytes(b"\x00" * 64)
        with pytest.raises(NotAXposedModule):
            validate_module(junk)

    def test_missing_rejected(self, tmp_path):
        with pytest.raises(NotAXposedModule):
            validate_module(tmp_path / "nope.apk")


class TestEmbed:
    def test_embeds_and_rejects_per_module(self, module_a, module_b, not_a_module, logger):
        staged = StagedArchive()
        outcomes = ModuleEmbedder(logger).embed(staged, [module_a, not_a_module, module_b],
                                                LoadingMode.PORTABLE)
        assert [o.status for o in outcomes] == [EMBEDDED, REJECTED, EMBEDDED]
        assert outcomes[0].entry_name == "assets/nexpatch/modules/A.apk"
        assert outcomes[0].package_name == "com.example.a"
        assert outcomes[1].error
        assert staged.read("assets/nexpatch/modules/B.apk") == module_b.read_bytes()

    def test_name_collision_gets_suffix(self, module_a, tmp_path, logger):
        other = tmp_path / "other" / "A.apk"
        other.parent.mkdir()
        shutil.copy(module_a, other)
        staged = StagedArchive()
        outcomes = ModuleEmbedder(logger).embed(staged, [module_a, other], LoadingMode.PORTABLE)
        assert [o.entry_name for o in outcomes] == ["assets/nexpatch/modules/A.apk",
                                                    "assets/nexpatch/modules/A-1.apk"]

    def test_local_mode_skips(self, module_a, logger):
        staged = StagedArchive()
        outcomes = ModuleEmbedder(logger).embed(staged, [module_a], LoadingMode.LOCAL)
        assert outcomes[0].status == SKIPPED
        assert len(staged) == 0

    def test_extract(self, module_a, tmp_path, logger):
        staged = StagedArchive()
        ModuleEmbedder(logger).embed(staged, [module_a], LoadingMode.PORTABLE)
        out = tmp_path / "with-modules.apk"
        staged.freeze(out)
        with ArchiveReader(out) as reader:
            paths = extract_embedded_modules(reader, tmp_path / "extracted")
        assert [p.name for p in paths] == ["A.apk"]
        assert paths[0].read_bytes() == module_a.read_bytes()
