"""
injector.py  ─  loader payload injection + patch marker
═══════════════════════════════════════════════════════════════════════════════
Output layout (portable mode):

    classes.dex                                  ← bootstrap (metaloader)
    assets/nexpatch/origin.apk                   ← untouched original, STORED, 4K aligned
    assets/nexpatch/loader.dex                   ← loader
    assets/nexpatch/so/<abi>/libnexpatch.so      ← native part, one per app ABI
    assets/nexpatch/config.json                  ← marker (also base64 in manifest meta-data)

Local mode ships only the bootstrap, origin.apk and the marker; the manager
app serves the rest at runtime.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from nexpatch.archive import DEX_RE, ArchiveReader, StagedArchive
from nexpatch.constants import (ABI_ALIASES, ANDROID_MANIFEST_XML, ASSET_ROOT,
                                BOOTSTRAP_DEX_ENTRY, CONFIG_ASSET_PATH,
                                EMBEDDED_MODULES_ASSET_PATH, LOADER_DEX_ASSET_PATH,
                                META_DATA_KEY, NATIVE_LIB_ASSET_DIR, NATIVE_LIB_NAME,
                                ORIGINAL_APK_ASSET_PATH, PAYLOAD_LOADER_DEX,
                                PAYLOAD_METALOADER_DEX, PAYLOAD_SO_DIR, SUPPORTED_ABIS,
                                VERSION_CODE, VERSION_NAME)
from nexpatch.errors import CorruptArchive, IOFailure, LoaderAssetConflict, MalformedManifest
from nexpatch.log import PatchLogger
from nexpatch.manifest import ManifestEditor, Relaxation
from nexpatch.request import LoadingMode, PatchRequest, SchemeSelection

_LIB_RE = re.compile(r'^lib/([^/]+)/')


# ═══════════════════════════════════════════════════════════════════════════════
#  M A R K E R
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass
class PatchConfig:
    use_manager: bool
    debuggable: bool
    override_version_code: bool
    sig_bypass_level: int
    v1: bool
    v2: bool
    v3: bool
    original_signature: str = ""
    app_component_factory: Optional[str] = None
    original_version_code: Optional[int] = None
    engine_version_code: int = VERSION_CODE
    engine_version_name: str = VERSION_NAME

    @property
    def mode(self) -> LoadingMode:
        return LoadingMode.LOCAL if self.use_manager else LoadingMode.PORTABLE

    def is_outdated(self, current: int = VERSION_CODE) -> bool:
        return self.engine_version_code < current

    # ── JSON / base64 ────────────────────────────────────────────────────────
    def to_dict(self) -> dict:
        return {
            "useManager": self.use_manager,
            "debuggable": self.debuggable,
            "overrideVersionCode": self.override_version_code,
            "sigBypassLevel": self.sig_bypass_level,
            "v1": self.v1,
            "v2": self.v2,
            "v3": self.v3,
            "originalSignature": self.original_signature,
            "appComponentFactory": self.app_component_factory,
            "originalVersionCode": self.original_version_code,
            "engine": {"versionCode": self.engine_version_code,
                       "versionName": self.engine_version_name},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def to_meta_value(self) -> str:
        return base64.b64encode(self.to_json().encode()).decode()

    @classmethod
    def from_json(cls, text: str) -> "PatchConfig":
        try:
            d = json.loads(text)
            engine = d.get("engine") or {}
            return cls(
                use_manager=bool(d["useManager"]),
                debuggable=bool(d.get("debuggable", False)),
                override_version_code=bool(d.get("overrideVersionCode", False)),
                sig_bypass_level=int(d.get("sigBypassLevel", 0)),
                v1=bool(d.get("v1", False)),
                v2=bool(d.get("v2", False)),
                v3=bool(d.get("v3", False)),
                original_signature=d.get("originalSignature") or "",
                app_component_factory=d.get("appComponentFactory"),
                original_version_code=d.get("originalVersionCode"),
                engine_version_code=int(engine.get("versionCode", 0)),
                engine_version_name=str(engine.get("versionName", "")),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            raise MalformedManifest(f"unreadable patch marker: {exc}") from exc

    @classmethod
    def from_meta_value(cls, value: str) -> "PatchConfig":
        try:
            text = base64.b64decode(value, validate=True).decode()
        except (binascii.Error, UnicodeDecodeError, TypeError) as exc:
            raise MalformedManifest(f"patch marker is not base64 JSON: {exc}") from exc
        return cls.from_json(text)

    @classmethod
    def from_archive(cls, reader: ArchiveReader) -> Optional["PatchConfig"]:
        """Marker of an already patched archive, or None."""
        if reader.has(CONFIG_ASSET_PATH):
            return cls.from_json(reader.read(CONFIG_ASSET_PATH).decode("utf-8", "replace"))
        if reader.has(ANDROID_MANIFEST_XML):
            value = ManifestEditor.from_bytes(reader.read(ANDROID_MANIFEST_XML)).meta_data(META_DATA_KEY)
            if isinstance(value, str):
                return cls.from_meta_value(value)
        return None


def read_patch_config(path) -> Optional[PatchConfig]:
    with ArchiveReader(path) as reader:
        return PatchConfig.from_archive(reader)


# ═══════════════════════════════════════════════════════════════════════════════
#  P A Y L O A D
# ═══════════════════════════════════════════════════════════════════════════════
def _is_dex(data: bytes) -> bool:
    magic = bytes(data[0:8])
    return magic.startswith(b'dex\n') or magic.startswith(b'dey\n')


class LoaderPayload:
    """The loader files shipped with the engine (NEXPATCH_PAYLOAD_DIR)."""

    def __init__(self, directory):
        self.directory = Path(directory)

    @property
    def metaloader_path(self) -> Path:
        return self.directory / PAYLOAD_METALOADER_DEX

    @property
    def loader_path(self) -> Path:
        return self.directory / PAYLOAD_LOADER_DEX

    def native_lib_path(self, abi: str) -> Path:
        return self.directory / PAYLOAD_SO_DIR / abi / NATIVE_LIB_NAME

    def _read_dex(self, path: Path) -> bytes:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise IOFailure(f"loader payload missing: {path} ({exc})") from exc
        if not _is_dex(data):
            raise IOFailure(f"loader payload {path.name} is not a DEX file (magic={data[:8]!r})")
        return data

    def metaloader(self) -> bytes:
        return self._read_dex(self.metaloader_path)

    def loader(self) -> bytes:
        return self._read_dex(self.loader_path)

    def native_lib(self, abi: str) -> bytes:
        path = self.native_lib_path(abi)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise IOFailure(f"native library for {abi} missing: {path} ({exc})") from exc


# ═══════════════════════════════════════════════════════════════════════════════
#  I N J E C T O R
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass
class OriginalApp:
    """What the app looked like before the first patch."""
    app_component_factory: Optional[str]
    version_code: Optional[int]
    signature: str = ""


def app_abis(names: List[str], logger: Optional[PatchLogger] = None) -> List[str]:
    """ABIs to ship the native loader for: the app's own, else all supported."""
    found = set()
    for name in names:
        m = _LIB_RE.match(name)
        if m:
            found.add(m.group(1))
    if not found:
        return list(SUPPORTED_ABIS)
    abis = set()
    for abi in found:
        abi = ABI_ALIASES.get(abi, abi)
        if abi in SUPPORTED_ABIS:
            abis.add(abi)
        elif logger is not None:
            logger.i(f"Warning: unsupported arch {abi}, skipping")
    return [a for a in SUPPORTED_ABIS if a in abis]


def check_reinjection(previous: Optional[PatchConfig], base: ArchiveReader,
                      request: PatchRequest) -> None:
    """Refuse to overwrite reserved assets unless an update was asked for."""
    patched = previous is not None or base.has(ORIGINAL_APK_ASSET_PATH)
    if not patched:
        return
    if not request.update_loader:
        raise LoaderAssetConflict(
            f"{base.path.name} already carries a loader; use update-loader to replace it")
    if previous is None:
        raise LoaderAssetConflict(f"{base.path.name} has reserved assets but no patch marker")
    if previous.mode is not request.mode:
        raise LoaderAssetConflict(
            f"{base.path.name} was patched in {previous.mode.value} mode, "
            f"cannot update it in {request.mode.value} mode")
    if not base.has(ORIGINAL_APK_ASSET_PATH):
        raise CorruptArchive(f"{base.path.name}: patch marker present but origin.apk is missing")


def _is_loader_asset(name: str) -> bool:
    return (name.startswith(ASSET_ROOT)
            and name != ORIGINAL_APK_ASSET_PATH
            and not name.startswith(EMBEDDED_MODULES_ASSET_PATH))


class LoaderInjector:
    def __init__(self, payload: LoaderPayload, logger: PatchLogger):
        self.payload = payload
        self.log = logger

    def inject(self, staged: StagedArchive, base: ArchiveReader, editor: ManifestEditor,
               request: PatchRequest, schemes: SchemeSelection, original: OriginalApp,
               relaxations, updating: bool = False) -> PatchConfig:
        # original code moves into the embedded archive
        if not updating:
            staged.put_file(ORIGINAL_APK_ASSET_PATH, base.path)
            self.log.d(f"Embedded original archive as {ORIGINAL_APK_ASSET_PATH}")
        dropped = staged.remove_where(lambda n: DEX_RE.match(n) is not None)
        stale = staged.remove_where(_is_loader_asset)
        self.log.d(f"Removed {len(dropped)} dex and {len(stale)} stale loader entries")

        staged.put(BOOTSTRAP_DEX_ENTRY, self.payload.metaloader())
        self.log.d(f"Added bootstrap as {BOOTSTRAP_DEX_ENTRY}")

        if request.mode is LoadingMode.PORTABLE:
            staged.put(LOADER_DEX_ASSET_PATH, self.payload.loader())
            for abi in app_abis(staged.names(), self.log):
                entry = f"{NATIVE_LIB_ASSET_DIR}{abi}/{NATIVE_LIB_NAME}"
                staged.put(entry, self.payload.native_lib(abi), compress=False)
                self.log.d(f"Added {entry}")

        config = PatchConfig(
            use_manager=request.mode.use_manager,
            debuggable=request.debuggable,
            override_version_code=request.override_version_code,
            sig_bypass_level=int(request.bypass_level),
            v1=schemes.v1, v2=schemes.v2, v3=schemes.v3,
            original_signature=(original.signature
                                if Relaxation.RECORD_ORIGINAL_SIGNATURE in relaxations else ""),
            app_component_factory=original.app_component_factory,
            original_version_code=original.version_code,
        )
        staged.put(CONFIG_ASSET_PATH, config.to_json().encode())
        editor.add_meta_data(META_DATA_KEY, config.to_meta_value())
        self.log.i(f"Injected loader ({request.mode.value} mode, engine {VERSION_NAME})")
        return config
