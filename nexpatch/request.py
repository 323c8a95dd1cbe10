"""Immutable inputs and terminal results of one patch invocation."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from nexpatch.errors import SchemeConflict
from nexpatch.log import LogRecord


class BypassLevel(IntEnum):
    NONE = 0
    DISABLE_CERT_PIN_CHECKS = 1
    DISABLE_ALL_VERIFICATION = 2


class LoadingMode(Enum):
    LOCAL = "local"          # loader served by the manager app at runtime
    PORTABLE = "portable"    # loader + modules embedded in the archive

    @property
    def use_manager(self) -> bool:
        return self is LoadingMode.LOCAL


@dataclass(frozen=True)
class SchemeSelection:
    v1: bool
    v2: bool
    v3: bool

    @classmethod
    def default_for(cls, level: BypassLevel) -> "SchemeSelection":
        if level >= BypassLevel.DISABLE_ALL_VERIFICATION:
            # The manifest floor is lowered, JAR signing alone installs
            return cls(True, False, False)
        return cls(True, True, True)

    @property
    def whole_file(self) -> bool:
        return self.v2 or self.v3

    def resolve(self) -> "SchemeSelection":
        if not (self.v1 or self.v2 or self.v3):
            raise SchemeConflict("at least one signature scheme must be enabled")
        return self

    def describe(self) -> str:
        names = [n for n, on in (("v1", self.v1), ("v2", self.v2), ("v3", self.v3)) if on]
        return "+".join(names) or "none"


@dataclass(frozen=True)
class PatchRequest:
    apk_paths: Tuple[Path, ...]
    output_path: Path
    debuggable: bool = False
    bypass_level: BypassLevel = BypassLevel.NONE
    v1: Optional[bool] = None
    v2: Optional[bool] = None
    v3: Optional[bool] = None
    mode: LoadingMode = LoadingMode.PORTABLE
    override_version_code: bool = False
    verbose: bool = False
    embedded_modules: Tuple[Path, ...] = ()
    update_loader: bool = False
    force: bool = False

    def __post_init__(self):
        object.__setattr__(self, "apk_paths", tuple(Path(p) for p in self.apk_paths))
        object.__setattr__(self, "embedded_modules", tuple(Path(p) for p in self.embedded_modules))
        object.__setattr__(self, "output_path", Path(self.output_path))
        object.__setattr__(self, "bypass_level", BypassLevel(self.bypass_level))
        if not self.apk_paths:
            raise ValueError("at least one package archive is required")

    @property
    def base_apk(self) -> Path:
        return self.apk_paths[0]

    @property
    def split_apks(self) -> Tuple[Path, ...]:
        return self.apk_paths[1:]

    def schemes(self, whole_file_required: bool = False) -> SchemeSelection:
        """
        Explicit choices win; unset ones fall back to the bypass level default.
        When the patched manifest still demands a whole-file signature the
        v1-only default is widened to all schemes, and an explicit v1-only
        choice is refused.
        """
        default = SchemeSelection.default_for(self.bypass_level)
        if whole_file_required and not default.whole_file:
            default = SchemeSelection(True, True, True)
        chosen = SchemeSelection(
            default.v1 if self.v1 is None else self.v1,
            default.v2 if self.v2 is None else self.v2,
            default.v3 if self.v3 is None else self.v3,
        ).resolve()
        if whole_file_required and not chosen.whole_file:
            raise SchemeConflict("targetSdkVersion above 29 needs a v2 or v3 signature, "
                                 f"{chosen.describe()} alone will not install")
        return chosen


# ── Results ──────────────────────────────────────────────────────────────────
EMBEDDED = "embedded"
REJECTED = "rejected"
SKIPPED  = "skipped"


@dataclass(frozen=True)
class ModuleOutcome:
    path: Path
    status: str
    entry_name: Optional[str] = None
    package_name: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == EMBEDDED


@dataclass
class PatchResult:
    success: bool
    state: str
    output_path: Optional[Path] = None
    split_outputs: List[Path] = field(default_factory=list)
    mutations: List[str] = field(default_factory=list)
    modules: List[ModuleOutcome] = field(default_factory=list)
    records: Sequence[LogRecord] = ()
    error_kind: Optional[str] = None
    error: Optional[str] = None
    trace: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1
