#!/usr/bin/env python3
"""
nexpatch  ─  command line
════════════════════════════════════════════════════════════════════
Commands:
  nexpatch patch APK [APK...] -o DIR [options]   Patch (base first, then splits)
  nexpatch inspect APK [--extract-modules DIR]   Patch marker + entry map
  nexpatch verify APK                            Check v1 / v2 / v3 + alignment
  nexpatch keystore reset|show|import            Manage the signing identity

Patch options:
  -f, --force            overwrite existing output
  -d, --debuggable       mark the app debuggable
  -l, --sigbypasslv N    signature bypass level 0, 1 or 2
  --v1/--v2/--v3 BOOL    force a signature scheme on or off
  --manager              local mode: loader and modules served by the manager
  -r, --allowdown        override versionCode to 1 (allow downgrade installs)
  -m, --embed MODULE     embed a module archive (repeatable)
  --update-loader        replace the loader of an already patched app
"""

import argparse
import logging
import sys
import zipfile
from pathlib import Path
from typing import List, Optional

from nexpatch.archive import ArchiveReader, alignment_for, must_store
from nexpatch.config import load_settings
from nexpatch.constants import VERSION_NAME
from nexpatch.errors import PatchError
from nexpatch.injector import PatchConfig
from nexpatch.keystore import IdentityStore
from nexpatch.log import PatchLogger, configure_console
from nexpatch.modules import extract_embedded_modules
from nexpatch.pipeline import PatchPipeline
from nexpatch.request import BypassLevel, LoadingMode, PatchRequest
from nexpatch.verify import verify_apk

log = logging.getLogger("nexpatch.cli")


def _bool(value: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected a boolean, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="nexpatch", description="Rootless APK patch engine")
    p.add_argument("--version", action="version", version=f"nexpatch {VERSION_NAME}")
    p.add_argument("--env-file", type=Path, default=None, help="load settings from this .env")
    sub = p.add_subparsers(dest="cmd")

    pp = sub.add_parser("patch", help="Patch an app")
    pp.add_argument("apks", nargs="+", type=Path)
    pp.add_argument("-o", "--output", type=Path, required=True)
    pp.add_argument("-f", "--force", action="store_true")
    pp.add_argument("-d", "--debuggable", action="store_true")
    pp.add_argument("-l", "--sigbypasslv", type=int, choices=(0, 1, 2), default=0)
    pp.add_argument("--v1", type=_bool, default=None)
    pp.add_argument("--v2", type=_bool, default=None)
    pp.add_argument("--v3", type=_bool, default=None)
    pp.add_argument("--manager", action="store_true")
    pp.add_argument("-r", "--allowdown", action="store_true")
    pp.add_argument("-v", "--verbose", action="store_true")
    pp.add_argument("-m", "--embed", nargs="+", action="extend", type=Path, default=[])
    pp.add_argument("--update-loader", action="store_true")

    pi = sub.add_parser("inspect", help="Show patch marker and entry map")
    pi.add_argument("apk", type=Path)
    pi.add_argument("--extract-modules", type=Path, default=None, metavar="DIR")

    pv = sub.add_parser("verify", help="Verify signatures and alignment")
    pv.add_argument("apk", type=Path)

    pk = sub.add_parser("keystore", help="Manage the signing identity")
    ks = pk.add_subparsers(dest="action")
    ks.add_parser("reset", help="Replace the store with a fresh default identity")
    ks.add_parser("show", help="Print the current signing certificate")
    ki = ks.add_parser("import", help="Use a PKCS#12 store as the signing identity")
    ki.add_argument("store", type=Path)
    ki.add_argument("--password", required=True)
    ki.add_argument("--alias", default=None)
    ki.add_argument("--key-password", default=None)
    return p


# ── commands ─────────────────────────────────────────────────────────────────
def cmd_patch(args, settings) -> int:
    request = PatchRequest(
        apk_paths=tuple(args.apks),
        output_path=args.output,
        debuggable=args.debuggable,
        bypass_level=BypassLevel(args.sigbypasslv),
        v1=args.v1, v2=args.v2, v3=args.v3,
        mode=LoadingMode.LOCAL if args.manager else LoadingMode.PORTABLE,
        override_version_code=args.allowdown,
        verbose=args.verbose,
        embedded_modules=tuple(args.embed),
        update_loader=args.update_loader,
        force=args.force,
    )
    result = PatchPipeline(request, settings, logger=PatchLogger(verbose=args.verbose)).run()
    for outcome in result.modules:
        if not outcome.ok:
            log.warning("module %s %s%s", outcome.path.name, outcome.status,
                        f": {outcome.error}" if outcome.error else "")
    if not result.success:
        log.error(result.trace)
    return result.exit_code


def cmd_inspect(args) -> int:
    apk = args.apk.resolve()
    with ArchiveReader(apk) as reader:
        config = PatchConfig.from_archive(reader)
        print(f"\n{'═' * 78}")
        print(f"  APK    : {apk.name}")
        print(f"  Size   : {apk.stat().st_size / 1024 / 1024:.2f} MB")
        if config is None:
            print("  Marker : (not patched)")
        else:
            print(f"  Marker : engine {config.engine_version_name} ({config.engine_version_code})"
                  f"{'  ◄ OUTDATED' if config.is_outdated() else ''}")
            print(f"  Mode   : {config.mode.value}   bypass level {config.sig_bypass_level}   "
                  f"v1={config.v1} v2={config.v2} v3={config.v3}")
            print(f"  Factory: {config.app_component_factory}")
            print(f"  Version: {config.original_version_code}"
                  f"{' (overridden)' if config.override_version_code else ''}")
        print(f"{'─' * 78}")
        print(f"  {'Entry':<48} {'Comp':>8}  {'Aligned':>8}  {'Data Offset':>10}")
        print(f"{'─' * 78}")
        for zi in reader.infos():
            data_off = reader.data_offset(zi.filename)
            comp = "STORE" if zi.compress_type == zipfile.ZIP_STORED else "DEFLATE"
            want = alignment_for(zi.filename, zi.compress_type)
            aligned = "✓" if not want or data_off % want == 0 else "✗"
            flag = " ◄ MUST-STORE" if must_store(zi.filename) else ""
            print(f"  {zi.filename[-48:]:<48} {comp:>8}  {aligned:>8}  {data_off:>10}{flag}")
        print(f"{'═' * 78}\n")
        if args.extract_modules is not None:
            for path in extract_embedded_modules(reader, args.extract_modules):
                log.info("Extracted %s", path)
    return 0


def cmd_verify(args) -> int:
    log.info("Verifying: %s", args.apk.name)
    report = verify_apk(args.apk)
    for line in report.lines():
        log.info(line)
    if report.verified and not report.alignment:
        log.info("%s verifies", args.apk.name)
        return 0
    log.error("%s does not verify", args.apk.name)
    return 1


def cmd_keystore(args, settings) -> int:
    store = IdentityStore(settings)
    if args.action == "reset":
        identity = store.reset()
    elif args.action == "import":
        identity = store.set_custom(args.store, args.password, args.alias, args.key_password)
    elif args.action == "show":
        identity = store.resolve()
    else:
        log.error("keystore needs an action: reset, show or import")
        return 1
    print(f"  Store      : {store.path}")
    print(f"  Alias      : {identity.alias}")
    print(f"  Subject    : {identity.certificate.subject.rfc4514_string()}")
    print(f"  Algorithm  : {'RSA' if identity.is_rsa else 'EC'}")
    print(f"  SHA-256    : {identity.fingerprint}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 1
    configure_console(getattr(args, "verbose", False))
    try:
        settings = load_settings(args.env_file)
        if args.cmd == "patch":
            return cmd_patch(args, settings)
        if args.cmd == "inspect":
            return cmd_inspect(args)
        if args.cmd == "verify":
            return cmd_verify(args)
        return cmd_keystore(args, settings)
    except PatchError as exc:
        log.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
