"""
pipeline.py  ─  patch orchestration
═══════════════════════════════════════════════════════════════════════════════
    INIT ─▶ MANIFEST_PATCHED ─▶ ASSETS_INJECTED ─▶ ARCHIVE_WRITTEN ─▶ SIGNED ─▶ DONE
      └──────────────┴─────────────────┴────────────────┴───────────┴──▶ FAILED

  ① open every input, resolve the signing identity, read the base manifest
  ② manifest: entry point → proxy factory, debuggable, version code, relaxations
  ③ assets: origin.apk + bootstrap + loader + marker, then embedded modules
  ④ v1 signature (staged), freeze with a reserved gap for the signing block
  ⑤ v2/v3 block spliced into the gap; split archives re-signed the same way
  ⑥ every temp archive moved into place; on any failure all temps are deleted

Cancellation is checked only between stages.
"""

import threading
import traceback
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from nexpatch.archive import (ArchiveReader, FrozenArchive, StagedArchive, open_archives,
                              temp_archive_path)
from nexpatch.config import Settings
from nexpatch.constants import (ANDROID_MANIFEST_XML, PATCH_FILE_SUFFIX,
                                PROXY_APP_COMPONENT_FACTORY, VERSION_NAME)
from nexpatch.errors import IOFailure, LoaderAssetConflict, PatchCancelled, PatchError
from nexpatch.injector import (LoaderInjector, LoaderPayload, OriginalApp, PatchConfig,
                               check_reinjection)
from nexpatch.jarsign import SCHEME_V2_ID, SCHEME_V3_ID, is_signature_entry, sign_v1
from nexpatch.keystore import IdentityStore, SigningIdentity
from nexpatch.log import PatchLogger
from nexpatch.manifest import ManifestEditor, Relaxation
from nexpatch.modules import ModuleEmbedder
from nexpatch.request import (BypassLevel, LoadingMode, ModuleOutcome, PatchRequest,
                              PatchResult, SchemeSelection)
from nexpatch.sigblock import estimate_reserve, original_signature, sign_frozen


class Stage(Enum):
    INIT = "init"
    MANIFEST_PATCHED = "manifest-patched"
    ASSETS_INJECTED = "assets-injected"
    ARCHIVE_WRITTEN = "archive-written"
    SIGNED = "signed"
    DONE = "done"
    FAILED = "failed"


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: Stage) -> None:
        if self._event.is_set():
            raise PatchCancelled(f"cancelled after stage {stage.value}")


def _output_stem(apk: Path) -> str:
    stem = apk.stem
    suffix_stem = PATCH_FILE_SUFFIX[:-len(".apk")]
    while stem.endswith(suffix_stem):
        stem = stem[:-len(suffix_stem)]
    return stem


def output_file_for(request: PatchRequest, apk: Optional[Path] = None) -> Path:
    """`output_path` names a file when it ends in .apk, otherwise a directory."""
    apk = apk or request.base_apk
    out = request.output_path
    if apk == request.base_apk and out.suffix.lower() == ".apk":
        return out
    directory = out.parent if out.suffix.lower() == ".apk" else out
    return directory / f"{_output_stem(apk)}{PATCH_FILE_SUFFIX}"


class PatchPipeline:
    def __init__(self, request: PatchRequest, settings: Settings,
                 logger: Optional[PatchLogger] = None, cancel: Optional[CancelToken] = None,
                 identity: Optional[SigningIdentity] = None,
                 payload: Optional[LoaderPayload] = None):
        self.request = request
        self.settings = settings
        self.log = logger or PatchLogger(verbose=request.verbose)
        self.cancel = cancel or CancelToken()
        self.identity = identity
        self.payload = payload or LoaderPayload(settings.payload_dir)
        self.stage = Stage.INIT
        self.editor: Optional[ManifestEditor] = None
        self.modules: List[ModuleOutcome] = []
        self._temps: List[Path] = []
        self._pending: List = []    # (SignedArchive | FrozenArchive, final path)
        self._committed: List[Path] = []

    # ── public ───────────────────────────────────────────────────────────────
    def run(self) -> PatchResult:
        try:
            output, splits = self._run()
        except PatchError as exc:
            return self._fail(exc.kind, exc.message, traceback.format_exc())
        except OSError as exc:
            return self._fail(IOFailure.kind, str(exc), traceback.format_exc())
        except Exception as exc:
            return self._fail(type(exc).__name__, str(exc), traceback.format_exc())
        self.log.i(f"Done. Output APK: {output}")
        return PatchResult(True, self.stage.name, output, splits, self._mutations(),
                           self.modules, list(self.log.records))

    # ── internals ────────────────────────────────────────────────────────────
    def _advance(self, stage: Stage) -> None:
        self.stage = stage
        self.log.d(f"stage → {stage.value}")
        self.cancel.check(stage)

    def _mutations(self) -> List[str]:
        return list(self.editor.mutations) if self.editor is not None else []

    def _fail(self, kind: str, message: str, trace: str) -> PatchResult:
        for tmp in self._temps:
            tmp.unlink(missing_ok=True)
        for path in self._committed:
            path.unlink(missing_ok=True)
        self.stage = Stage.FAILED
        self.log.e(f"{kind}: {message}")
        self.log.d(trace)
        return PatchResult(False, Stage.FAILED.name, mutations=self._mutations(),
                           modules=self.modules, records=list(self.log.records),
                           error_kind=kind, error=message, trace=trace)

    def _check_outputs(self, paths: Sequence[Path]) -> None:
        for p in paths:
            if p.exists() and not self.request.force:
                raise IOFailure(f"{p} exists, use force to overwrite")

    def _run(self):
        req = self.request
        req.schemes()    # fail fast on an empty selection
        out_file = output_file_for(req)
        split_files = [output_file_for(req, s) for s in req.split_apks]
        self._check_outputs([out_file] + split_files)
        tmp_dir = self.settings.tmp_dir or out_file.parent
        try:
            tmp_dir.mkdir(parents=True, exist_ok=True)
            out_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"{tmp_dir}: {exc}") from exc

        self.log.i(f"Patching {req.base_apk.name}: level {int(req.bypass_level)}, "
                   f"{req.mode.value} mode")
        identity = self.identity or IdentityStore(self.settings).resolve()
        self.log.d(f"Signing identity {identity.alias} ({identity.fingerprint[:16]}…)")

        with open_archives(req.apk_paths) as archives:
            base = archives.base
            self.editor = ManifestEditor.from_bytes(base.read(ANDROID_MANIFEST_XML))
            previous = PatchConfig.from_archive(base)
            check_reinjection(previous, base, req)
            updating = previous is not None
            self.log.i(f"Package {self.editor.package} (versionCode {self.editor.version_code})")

            # ── ② manifest ─────────────────────────────────────────────────
            relaxations = self.editor.relax_signature_constraint(req.bypass_level)
            for warning in self.editor.warnings:
                self.log.i(f"Warning: {warning}")
            schemes = req.schemes(self.editor.requires_whole_file_signature)
            self.log.i(f"Signature schemes: {schemes.describe()}")
            original = self._original_app(base, previous, relaxations)
            self._patch_manifest(original)
            self._advance(Stage.MANIFEST_PATCHED)

            # ── ③ assets ───────────────────────────────────────────────────
            staged = StagedArchive()
            staged.copy_from(base, exclude=is_signature_entry)
            injector = LoaderInjector(self.payload, self.log)
            injector.inject(staged, base, self.editor, req, schemes, original,
                            relaxations, updating=updating)
            self.modules = ModuleEmbedder(self.log).embed(staged, req.embedded_modules, req.mode)
            staged.put(ANDROID_MANIFEST_XML, self.editor.serialize())
            self._advance(Stage.ASSETS_INJECTED)

            # ── ④ write ────────────────────────────────────────────────────
            frozen = self._write(staged, identity, schemes, out_file, tmp_dir)
            split_frozen = []
            for reader, target in zip(archives.splits, split_files):
                split_staged = StagedArchive()
                split_staged.copy_from(reader, exclude=is_signature_entry)
                split_frozen.append((self._write(split_staged, identity, schemes,
                                                 target, tmp_dir), target))
            self._advance(Stage.ARCHIVE_WRITTEN)

            # ── ⑤ sign ─────────────────────────────────────────────────────
            self._pending = [(self._sign(frozen, identity, schemes), out_file)]
            self._pending += [(self._sign(f, identity, schemes), t) for f, t in split_frozen]
            self._advance(Stage.SIGNED)

        # ── ⑥ commit: splits first, the base last ──────────────────────────
        splits = [self._commit(archive, target) for archive, target in self._pending[1:]]
        output = self._commit(*self._pending[0])
        self.stage = Stage.DONE
        for p in splits:
            self.log.i(f"Re-signed split: {p}")
        return output, splits

    def _commit(self, archive, target: Path) -> Path:
        path = archive.commit(target)
        self._committed.append(path)
        return path

    def _original_app(self, base: ArchiveReader, previous: Optional[PatchConfig],
                      relaxations) -> OriginalApp:
        if previous is not None:
            self.log.i(f"Updating loader (was engine {previous.engine_version_name}, "
                       f"now {VERSION_NAME})")
            return OriginalApp(previous.app_component_factory,
                               previous.original_version_code,
                               previous.original_signature)
        signature = ""
        if Relaxation.RECORD_ORIGINAL_SIGNATURE in relaxations:
            signature = original_signature(base.path) or ""
            if not signature:
                self.log.i("Warning: input is unsigned, no original signature recorded")
            else:
                self.log.d(f"Original signature {signature[:32]}…")
        return OriginalApp(self.editor.app_component_factory, self.editor.version_code, signature)

    def _patch_manifest(self, original: OriginalApp) -> None:
        req, editor = self.request, self.editor
        self.log.d(f"original appComponentFactory: {original.app_component_factory}")
        editor.set_application_entry_point(PROXY_APP_COMPONENT_FACTORY)
        editor.set_debuggable(req.debuggable)
        if req.override_version_code:
            editor.set_version_code(1)
        elif original.version_code is not None:
            editor.set_version_code(original.version_code)

    def _write(self, staged: StagedArchive, identity: SigningIdentity,
               schemes: SchemeSelection, target: Path, tmp_dir: Path) -> FrozenArchive:
        if schemes.v1:
            apk_signed = [i for i, on in ((SCHEME_V2_ID, schemes.v2), (SCHEME_V3_ID, schemes.v3)) if on]
            sign_v1(staged, identity, apk_signed=apk_signed)
        reserve = estimate_reserve(identity, schemes.v2, schemes.v3)
        tmp = temp_archive_path(tmp_dir, target.stem)
        self._temps.append(tmp)
        frozen = staged.freeze(tmp, reserve)
        self.log.d(f"Wrote {len(staged)} entries to {tmp.name} (reserved {reserve} bytes)")
        return frozen

    def _sign(self, frozen: FrozenArchive, identity: SigningIdentity, schemes: SchemeSelection):
        if not schemes.whole_file:
            return frozen
        return sign_frozen(frozen, identity, schemes.v2, schemes.v3)


def patch(request: PatchRequest, settings: Settings, **kwargs) -> PatchResult:
    return PatchPipeline(request, settings, **kwargs).run()


def update_loader(patched_paths: Sequence[Path], output_path: Path, settings: Settings,
                  **kwargs) -> PatchResult:
    """Re-inject the current loader into an already patched app, keeping its options."""
    try:
        config = _read_marker(Path(patched_paths[0]))
    except PatchError as exc:
        logger = kwargs.get("logger") or PatchLogger()
        logger.e(str(exc))
        return PatchResult(False, Stage.FAILED.name, records=list(logger.records),
                           error_kind=exc.kind, error=exc.message, trace=traceback.format_exc())
    request = PatchRequest(
        apk_paths=tuple(patched_paths),
        output_path=output_path,
        debuggable=config.debuggable,
        bypass_level=BypassLevel(config.sig_bypass_level),
        v1=config.v1, v2=config.v2, v3=config.v3,
        mode=LoadingMode.LOCAL if config.use_manager else LoadingMode.PORTABLE,
        override_version_code=config.override_version_code,
        update_loader=True,
        force=True,
    )
    return PatchPipeline(request, settings, **kwargs).run()


def _read_marker(path: Path) -> PatchConfig:
    with ArchiveReader(path) as reader:
        config = PatchConfig.from_archive(reader)
    if config is None:
        raise LoaderAssetConflict(f"{path.name} is not a patched archive")
    return config
