"""
manifest.py  ─  semantic edits on a compiled AndroidManifest.xml
═══════════════════════════════════════════════════════════════════════════════
Every mutation is idempotent: applying it twice with the same arguments
leaves the same document as applying it once. Meta-data keys are unique;
re-adding a key replaces its value and collapses duplicates.

Signature relaxation policies grow strictly with the bypass level:

    level 0   (nothing)
    level 1   RECORD_ORIGINAL_SIGNATURE   RELAX_SIGNATURE_PERMISSIONS
    level 2   level 1 + REDIRECT_ARCHIVE_READS + LOWER_SIGNATURE_SCHEME_FLOOR
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from nexpatch.axml import (TYPE_INT_BOOLEAN, TYPE_INT_DEC, BOOL_TRUE, NO_INDEX,
                           Element, ManifestTree, string_attr)
from nexpatch.constants import (ANDROID_NS, ATTR_APP_COMPONENT_FACTORY, ATTR_DEBUGGABLE,
                                ATTR_MIN_SDK_VERSION, ATTR_NAME, ATTR_PERMISSION_PROTECTION,
                                ATTR_TARGET_SDK_VERSION, ATTR_VALUE, ATTR_VERSION_CODE,
                                V1_ONLY_MAX_TARGET_SDK)
from nexpatch.errors import MalformedManifest
from nexpatch.request import BypassLevel

# android:protectionLevel base values
PROTECTION_NORMAL = 0x0
PROTECTION_SIGNATURE = 0x2
PROTECTION_SIGNATURE_OR_SYSTEM = 0x3
_PROTECTION_MASK_BASE = 0xF


class Relaxation(Enum):
    RECORD_ORIGINAL_SIGNATURE = "record-original-signature"
    RELAX_SIGNATURE_PERMISSIONS = "relax-signature-permissions"
    REDIRECT_ARCHIVE_READS = "redirect-archive-reads"
    LOWER_SIGNATURE_SCHEME_FLOOR = "lower-signature-scheme-floor"


_LEVEL_1 = frozenset({Relaxation.RECORD_ORIGINAL_SIGNATURE,
                      Relaxation.RELAX_SIGNATURE_PERMISSIONS})
_LEVEL_2 = _LEVEL_1 | {Relaxation.REDIRECT_ARCHIVE_READS,
                       Relaxation.LOWER_SIGNATURE_SCHEME_FLOOR}

RELAXATIONS: Dict[BypassLevel, FrozenSet[Relaxation]] = {
    BypassLevel.NONE: frozenset(),
    BypassLevel.DISABLE_CERT_PIN_CHECKS: _LEVEL_1,
    BypassLevel.DISABLE_ALL_VERIFICATION: _LEVEL_2,
}


def relaxations_for(level) -> FrozenSet[Relaxation]:
    return RELAXATIONS[BypassLevel(level)]


@dataclass
class ManifestInfo:
    package: Optional[str] = None
    version_code: Optional[int] = None
    min_sdk: Optional[int] = None
    target_sdk: Optional[int] = None
    app_component_factory: Optional[str] = None
    debuggable: bool = False
    meta_data: Dict[str, object] = field(default_factory=dict)


class ManifestEditor:
    def __init__(self, tree: ManifestTree):
        self.tree = tree
        self.mutations: List[str] = []
        self.warnings: List[str] = []
        if tree.element_name(tree.root) != "manifest":
            raise MalformedManifest(
                f"root element is {tree.element_name(tree.root)!r}, expected 'manifest'")

    @classmethod
    def from_bytes(cls, data: bytes) -> "ManifestEditor":
        return cls(ManifestTree.parse(data))

    def serialize(self) -> bytes:
        return self.tree.serialize()

    # ── element lookup ───────────────────────────────────────────────────────
    @property
    def manifest(self) -> Element:
        return self.tree.root

    @property
    def application(self) -> Element:
        app = self.tree.first(self.tree.root, "application")
        if app is None:
            raise MalformedManifest("manifest has no <application> element")
        return app

    def _uses_sdk(self) -> Optional[Element]:
        return self.tree.first(self.tree.root, "uses-sdk")

    def _android_attr(self, el: Optional[Element], name: str, res_id: int):
        if el is None:
            return None
        a = self.tree.find_attribute(el, name, res_id)
        return None if a is None else self.tree.attribute_value(a)

    @staticmethod
    def _as_int(value) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except ValueError:
            return None

    # ── reads ────────────────────────────────────────────────────────────────
    @property
    def package(self) -> Optional[str]:
        a = self.tree.find_attribute(self.manifest, "package")
        return None if a is None else self.tree.attribute_value(a)

    @property
    def version_code(self) -> Optional[int]:
        return self._as_int(self._android_attr(self.manifest, "versionCode", ATTR_VERSION_CODE))

    @property
    def min_sdk(self) -> Optional[int]:
        return self._as_int(self._android_attr(self._uses_sdk(), "minSdkVersion",
                                               ATTR_MIN_SDK_VERSION))

    @property
    def target_sdk(self) -> Optional[int]:
        return self._as_int(self._android_attr(self._uses_sdk(), "targetSdkVersion",
                                               ATTR_TARGET_SDK_VERSION))

    @property
    def requires_whole_file_signature(self) -> bool:
        """targetSdkVersion above 29 (or minSdk when target is unset) rejects v1-only archives."""
        target = self.target_sdk if self.target_sdk is not None else self.min_sdk
        return (target or 1) > V1_ONLY_MAX_TARGET_SDK

    @property
    def app_component_factory(self) -> Optional[str]:
        return self._android_attr(self.application, "appComponentFactory",
                                  ATTR_APP_COMPONENT_FACTORY)

    @property
    def debuggable(self) -> bool:
        return bool(self._android_attr(self.application, "debuggable", ATTR_DEBUGGABLE))

    def _meta_elements(self, key: Optional[str] = None) -> List[Element]:
        found = []
        for el in self.tree.children(self.application, "meta-data"):
            if key is None or self._android_attr(el, "name", ATTR_NAME) == key:
                found.append(el)
        return found

    def meta_data(self, key: str):
        for el in self._meta_elements(key):
            return self._android_attr(el, "value", ATTR_VALUE)
        return None

    def meta_data_map(self) -> Dict[str, object]:
        out = {}
        for el in self._meta_elements():
            name = self._android_attr(el, "name", ATTR_NAME)
            if name is not None:
                out[name] = self._android_attr(el, "value", ATTR_VALUE)
        return out

    def info(self) -> ManifestInfo:
        app = self.tree.first(self.tree.root, "application")
        return ManifestInfo(
            package=self.package,
            version_code=self.version_code,
            min_sdk=self.min_sdk,
            target_sdk=self.target_sdk,
            app_component_factory=self.app_component_factory if app is not None else None,
            debuggable=self.debuggable if app is not None else False,
            meta_data=self.meta_data_map() if app is not None else {},
        )

    # ── mutations ────────────────────────────────────────────────────────────
    def _set_string(self, el: Element, name: str, res_id: int, value: str) -> None:
        self.tree.set_attribute(el, name, res_id, ns_uri=ANDROID_NS,
                                **string_attr(self.tree, value))

    def _set_int(self, el: Element, name: str, res_id: int, value: int) -> None:
        self.tree.set_attribute(el, name, res_id, TYPE_INT_DEC, value & 0xFFFFFFFF,
                                ns_uri=ANDROID_NS)

    def set_application_entry_point(self, class_name: str) -> None:
        if self.app_component_factory == class_name:
            return
        self._set_string(self.application, "appComponentFactory",
                         ATTR_APP_COMPONENT_FACTORY, class_name)
        self.mutations.append(f"appComponentFactory → {class_name}")

    def add_meta_data(self, key: str, value: str) -> None:
        existing = self._meta_elements(key)
        for dup in existing[1:]:
            self.tree.remove_element(dup)
        if existing:
            el = existing[0]
            if self._android_attr(el, "value", ATTR_VALUE) == value and len(existing) == 1:
                return
        else:
            el = self.tree.new_element(self.application, "meta-data")
            self._set_string(el, "name", ATTR_NAME, key)
        self._set_string(el, "value", ATTR_VALUE, value)
        self.mutations.append(f"meta-data {key} set")

    def remove_meta_data(self, key: str) -> int:
        gone = self._meta_elements(key)
        for el in gone:
            self.tree.remove_element(el)
        if gone:
            self.mutations.append(f"meta-data {key} removed")
        return len(gone)

    def set_debuggable(self, flag: bool) -> None:
        app = self.application
        existing = self.tree.find_attribute(app, "debuggable", ATTR_DEBUGGABLE)
        if existing is None and not flag:
            return
        if existing is not None and self.tree.attribute_value(existing) == flag:
            return
        self.tree.set_attribute(app, "debuggable", ATTR_DEBUGGABLE, TYPE_INT_BOOLEAN,
                                BOOL_TRUE if flag else 0, NO_INDEX, ns_uri=ANDROID_NS)
        self.mutations.append(f"debuggable → {str(flag).lower()}")

    def set_version_code(self, code: int) -> None:
        if self.version_code == code:
            return
        self._set_int(self.manifest, "versionCode", ATTR_VERSION_CODE, code)
        self.mutations.append(f"versionCode → {code}")

    def bump_version_code(self, delta: int, base: Optional[int] = None) -> int:
        """
        Set versionCode to base + delta. `base` should be the original
        (pre-patch) version code so that re-applying is a no-op; it
        defaults to the current value.
        """
        if base is None:
            base = self.version_code or 0
        self.set_version_code(base + delta)
        return base + delta

    def relax_signature_constraint(self, level) -> FrozenSet[Relaxation]:
        """Apply the manifest side of the level's relaxations; returns the full policy set."""
        policy = relaxations_for(level)
        if Relaxation.RELAX_SIGNATURE_PERMISSIONS in policy:
            self._relax_permissions()
        if Relaxation.LOWER_SIGNATURE_SCHEME_FLOOR in policy:
            self._lower_scheme_floor()
        return policy

    def _relax_permissions(self) -> None:
        for perm in self.tree.children(self.manifest, "permission"):
            a = self.tree.find_attribute(perm, "protectionLevel", ATTR_PERMISSION_PROTECTION)
            if a is None or a.raw_value != NO_INDEX:
                continue
            if (a.data & _PROTECTION_MASK_BASE) in (PROTECTION_SIGNATURE,
                                                    PROTECTION_SIGNATURE_OR_SYSTEM):
                name = self._android_attr(perm, "name", ATTR_NAME)
                a.data = PROTECTION_NORMAL
                self.mutations.append(f"permission {name} protectionLevel → normal")

    def _lower_scheme_floor(self) -> None:
        target, minimum = self.target_sdk, self.min_sdk
        if target is None or target <= V1_ONLY_MAX_TARGET_SDK:
            return
        if minimum is not None and minimum > V1_ONLY_MAX_TARGET_SDK:
            warning = f"minSdkVersion {minimum} keeps the whole-file signature requirement"
            if warning not in self.warnings:
                self.warnings.append(warning)
            return
        self._set_int(self._uses_sdk(), "targetSdkVersion", ATTR_TARGET_SDK_VERSION,
                      V1_ONLY_MAX_TARGET_SDK)
        self.mutations.append(f"targetSdkVersion {target} → {V1_ONLY_MAX_TARGET_SDK}")


def read_manifest_info(data: bytes) -> ManifestInfo:
    return ManifestEditor.from_bytes(data).info()
