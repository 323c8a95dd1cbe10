"""
Error taxonomy. Every failure the engine can report is a PatchError whose
`kind` names the category shown to the caller.
"""


class PatchError(Exception):
    kind = "PatchError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else self.kind


# ── Input archives ───────────────────────────────────────────────────────────
class CorruptArchive(PatchError):
    kind = "CorruptArchive"


class EntryNotFound(PatchError):
    kind = "EntryNotFound"


# ── Manifest ─────────────────────────────────────────────────────────────────
class MalformedManifest(PatchError):
    kind = "MalformedManifest"


# ── Injector / embedder ──────────────────────────────────────────────────────
class LoaderAssetConflict(PatchError):
    kind = "LoaderAssetConflict"


class NotAXposedModule(PatchError):
    """Raised by module validation; the embedder turns it into a per-module outcome."""
    kind = "NotAXposedModule"


# ── Signing configuration ────────────────────────────────────────────────────
class SigningIdentityUnavailable(PatchError):
    kind = "SigningIdentityUnavailable"


class SchemeConflict(PatchError):
    kind = "SchemeConflict"


# ── Storage ──────────────────────────────────────────────────────────────────
class IOFailure(PatchError):
    kind = "IOFailure"


class PatchCancelled(PatchError):
    kind = "Cancelled"
