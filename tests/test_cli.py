"""Command line entry points."""

from __future__ import annotations

import argparse

import pytest

from nexpatch import cli
from nexpatch.injector import read_patch_config


@pytest.fixture
def env(monkeypatch, tmp_path, payload_dir):
    monkeypatch.setenv("NEXPATCH_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("NEXPATCH_PAYLOAD_DIR", str(payload_dir))
    monkeypatch.delenv("NEXPATCH_KEYSTORE", raising=False)
    monkeypatch.delenv("NEXPATCH_TMP_DIR", raising=False)
    return tmp_path


class TestParser:
    def test_bool_flags(self):
        args = cli.build_parser().parse_args(["patch", "a.apk", "-o", "out", "--v2", "false",
                                              "-l", "2", "-m", "x.apk", "y.apk"])
        assert args.v2 is False
        assert args.v1 is None
        assert args.sigbypasslv == 2
        assert [str(p) for p in args.embed] == ["x.apk", "y.apk"]

    def test_bad_bool(self):
        with pytest.raises(argparse.ArgumentTypeError):
            cli._bool("maybe")

    def test_no_command(self, capsys):
        assert cli.main([]) == 1


class TestCommands:
    def test_patch_inspect_verify(self, env, app_apk, module_a, capsys):
        out_dir = env / "out"
        assert cli.main(["patch", str(app_apk), "-o", str(out_dir), "-l", "1",
                         "-m", str(module_a)]) == 0
        patched = out_dir / "app-nexpatched.apk"
        assert read_patch_config(patched).sig_bypass_level == 1

        assert cli.main(["verify", str(patched)]) == 0

        assert cli.main(["inspect", str(patched), "--extract-modules", str(env / "mods-out")]) == 0
        printed = capsys.readouterr().out
        assert "assets/nexpatch/origin.apk" in printed
        assert "Data Offset" in printed
        assert (env / "mods-out" / "A.apk").read_bytes() == module_a.read_bytes()

        # second run without force refuses to overwrite
        assert cli.main(["patch", str(app_apk), "-o", str(out_dir)]) == 1
        assert cli.main(["patch", str(app_apk), "-o", str(out_dir), "-f"]) == 0

    def test_verify_unsigned(self, env, app_apk):
        assert cli.main(["verify", str(app_apk)]) == 1

    def test_keystore(self, env, capsys):
        assert cli.main(["keystore", "show"]) == 0
        first = capsys.readouterr().out
        assert "SHA-256" in first
        assert cli.main(["keystore", "reset"]) == 0
        assert capsys.readouterr().out != first
        assert cli.main(["keystore"]) == 1
