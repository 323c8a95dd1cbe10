"""Semantic manifest edits."""

from __future__ import annotations

import pytest

from nexpatch.constants import ATTR_PERMISSION_PROTECTION
from nexpatch.errors import MalformedManifest
from nexpatch.manifest import (ManifestEditor, Relaxation, read_manifest_info,
                               relaxations_for)
from nexpatch.request import BypassLevel

from tests.builders import El, app_manifest, encode_axml


def _reload(editor: ManifestEditor) -> ManifestEditor:
    return ManifestEditor.from_bytes(editor.serialize())


class TestReads:
    def test_info(self):
        info = read_manifest_info(app_manifest(factory="a.Factory", debuggable=False,
                                               meta=[("k", "v"), ("n", 3)]))
        assert info.package == "com.example.app"
        assert info.version_code == 10
        assert (info.min_sdk, info.target_sdk) == (21, 33)
        assert info.app_component_factory == "a.Factory"
        assert info.debuggable is False
        assert info.meta_data == {"k": "v", "n": 3}

    def test_root_must_be_manifest(self):
        with pytest.raises(MalformedManifest):
            ManifestEditor.from_bytes(encode_axml(El("application")))

    def test_missing_application(self):
        editor = ManifestEditor.from_bytes(encode_axml(El("manifest")))
        with pytest.raises(MalformedManifest):
            editor.set_application_entry_point("x.Y")


class TestMutations:
    """Each mutation applied twice leaves the same document as applied once."""

    @pytest.mark.parametrize("apply", [
        lambda e: e.set_application_entry_point("org.example.Proxy"),
        lambda e: e.add_meta_data("nexpatch", "e30="),
        lambda e: e.set_debuggable(True),
        lambda e: e.set_version_code(1),
        lambda e: e.bump_version_code(5, base=10),
        lambda e: e.relax_signature_constraint(BypassLevel.DISABLE_ALL_VERIFICATION),
        lambda e: e.remove_meta_data("old"),
    ])
    def test_idempotent(self, apply):
        editor = ManifestEditor.from_bytes(app_manifest(meta=[("old", "1")]))
        apply(editor)
        once = editor.serialize()
        apply(editor)
        assert editor.serialize() == once
        again = _reload(editor)
        apply(again)
        assert again.serialize() == once

    def test_entry_point(self):
        editor = ManifestEditor.from_bytes(app_manifest(factory="a.Factory"))
        editor.set_application_entry_point("org.example.Proxy")
        assert _reload(editor).app_component_factory == "org.example.Proxy"
        assert editor.mutations == ["appComponentFactory → org.example.Proxy"]

    def test_meta_data_replaces_and_collapses_duplicates(self):
        editor = ManifestEditor.from_bytes(app_manifest(meta=[("key", "a"), ("key", "b")]))
        editor.add_meta_data("key", "c")
        reloaded = _reload(editor)
        assert len(reloaded._meta_elements("key")) == 1
        assert reloaded.meta_data("key") == "c"

    def test_remove_meta_data(self):
        editor = ManifestEditor.from_bytes(app_manifest(meta=[("key", "a"), ("other", "b")]))
        assert editor.remove_meta_data("key") == 1
        assert _reload(editor).meta_data_map() == {"other": "b"}

    def test_debuggable(self):
        editor = ManifestEditor.from_bytes(app_manifest())
        editor.set_debuggable(False)
        assert editor.mutations == []
        editor.set_debuggable(True)
        assert _reload(editor).debuggable is True

    def test_version_code(self):
        editor = ManifestEditor.from_bytes(app_manifest(version_code=10))
        assert editor.bump_version_code(5) == 15
        assert _reload(editor).version_code == 15
        editor.set_version_code(1)
        assert _reload(editor).version_code == 1


class TestRelaxation:
    def test_policy_sets_grow_with_level(self):
        none = relaxations_for(0)
        one = relaxations_for(1)
        two = relaxations_for(2)
        assert none == frozenset()
        assert none < one < two
        assert Relaxation.RECORD_ORIGINAL_SIGNATURE in one

    def test_level_one_relaxes_signature_permissions(self):
        editor = ManifestEditor.from_bytes(app_manifest(protection_level=2))
        editor.relax_signature_constraint(BypassLevel.DISABLE_CERT_PIN_CHECKS)
        reloaded = _reload(editor)
        perm = reloaded.tree.first(reloaded.manifest, "permission")
        a = reloaded.tree.find_attribute(perm, "protectionLevel", ATTR_PERMISSION_PROTECTION)
        assert a.data == 0
        assert reloaded.target_sdk == 33

    def test_level_zero_changes_nothing(self):
        data = app_manifest()
        editor = ManifestEditor.from_bytes(data)
        editor.relax_signature_constraint(BypassLevel.NONE)
        assert editor.serialize() == data

    def test_level_two_lowers_target_sdk(self):
        editor = ManifestEditor.from_bytes(app_manifest(min_sdk=24, target_sdk=34))
        editor.relax_signature_constraint(BypassLevel.DISABLE_ALL_VERIFICATION)
        assert _reload(editor).target_sdk == 29

    def test_level_two_keeps_high_min_sdk(self):
        editor = ManifestEditor.from_bytes(app_manifest(min_sdk=30, target_sdk=34))
        editor.relax_signature_constraint(BypassLevel.DISABLE_ALL_VERIFICATION)
        assert _reload(editor).target_sdk == 34
        assert editor.requires_whole_file_signature
        assert editor.warnings == ["minSdkVersion 30 keeps the whole-file signature requirement"]
        editor.relax_signature_constraint(BypassLevel.DISABLE_ALL_VERIFICATION)
        assert len(editor.warnings) == 1

    def test_lowered_floor_allows_v1_only(self):
        editor = ManifestEditor.from_bytes(app_manifest(min_sdk=24, target_sdk=34))
        assert editor.requires_whole_file_signature
        editor.relax_signature_constraint(BypassLevel.DISABLE_ALL_VERIFICATION)
        assert not editor.requires_whole_file_signature
        assert editor.warnings == []
