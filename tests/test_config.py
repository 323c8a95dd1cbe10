"""Environment driven settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from nexpatch.config import load_settings, settings_from_env
from nexpatch.errors import SchemeConflict
from nexpatch.request import BypassLevel, PatchRequest, SchemeSelection

_VARS = ("NEXPATCH_HOME", "NEXPATCH_PAYLOAD_DIR", "NEXPATCH_KEYSTORE",
         "NEXPATCH_KEYSTORE_PASSWORD", "NEXPATCH_KEY_ALIAS", "NEXPATCH_KEY_PASSWORD",
         "NEXPATCH_TMP_DIR")


@pytest.fixture
def clean_env(monkeypatch):
    # setenv first so monkeypatch restores (removes) whatever load_dotenv adds
    for var in _VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    return monkeypatch


class TestSettings:
    def test_defaults_derive_from_home(self, tmp_path):
        s = settings_from_env({"NEXPATCH_HOME": str(tmp_path)})
        assert s.payload_dir == tmp_path / "payload"
        assert s.keystore_path == tmp_path / "keystore.p12"
        assert s.keystore_password == "123456"
        assert s.key_alias == "key0"
        assert s.tmp_dir is None
        assert s.uses_default_keystore

    def test_explicit_values(self, tmp_path):
        s = settings_from_env({"NEXPATCH_HOME": str(tmp_path),
                               "NEXPATCH_KEYSTORE": str(tmp_path / "k.p12"),
                               "NEXPATCH_TMP_DIR": str(tmp_path / "tmp")})
        assert not s.uses_default_keystore
        assert s.tmp_dir == tmp_path / "tmp"

    def test_env_file(self, clean_env, tmp_path):
        env = tmp_path / ".env"
        env.write_text(f"NEXPATCH_HOME={tmp_path / 'h'}\nNEXPATCH_KEY_ALIAS=release\n")
        s = load_settings(env)
        assert s.home == tmp_path / "h"
        assert s.key_alias == "release"

    def test_environment_wins_over_env_file(self, clean_env, tmp_path):
        env = tmp_path / ".env"
        env.write_text("NEXPATCH_KEY_ALIAS=from-file\n")
        clean_env.setenv("NEXPATCH_KEY_ALIAS", "from-env")
        assert load_settings(env).key_alias == "from-env"


class TestSchemes:
    def test_defaults_follow_level(self):
        assert SchemeSelection.default_for(BypassLevel.NONE) == SchemeSelection(True, True, True)
        assert SchemeSelection.default_for(BypassLevel.DISABLE_ALL_VERIFICATION) == \
            SchemeSelection(True, False, False)

    def test_explicit_choice_wins(self):
        req = PatchRequest((Path("a.apk"),), Path("out"), bypass_level=2, v2=True)
        assert req.schemes().describe() == "v1+v2"

    def test_nothing_enabled(self):
        req = PatchRequest((Path("a.apk"),), Path("out"), v1=False, v2=False, v3=False)
        with pytest.raises(SchemeConflict):
            req.schemes()

    def test_whole_file_requirement_widens_level_two_default(self):
        req = PatchRequest((Path("a.apk"),), Path("out"), bypass_level=2)
        assert req.schemes().describe() == "v1"
        assert req.schemes(whole_file_required=True).describe() == "v1+v2+v3"

    def test_whole_file_requirement_refuses_explicit_v1_only(self):
        req = PatchRequest((Path("a.apk"),), Path("out"), bypass_level=2, v2=False, v3=False)
        with pytest.raises(SchemeConflict, match="targetSdkVersion"):
            req.schemes(whole_file_required=True)
        explicit_v3 = PatchRequest((Path("a.apk"),), Path("out"), bypass_level=2, v3=True)
        assert explicit_v3.schemes(whole_file_required=True).describe() == "v1+v2+v3"

    def test_resolve_rejects_empty_selection(self):
        assert SchemeSelection(False, True, False).resolve().describe() == "v2"
        with pytest.raises(SchemeConflict):
            SchemeSelection(False, False, False).resolve()

    def test_request_needs_an_archive(self):
        with pytest.raises(ValueError):
            PatchRequest((), Path("out"))
