"""Embedding of add-on module archives into the patched package."""

import os
from pathlib import Path
from typing import Iterable, List, Optional

from nexpatch.archive import ArchiveReader, StagedArchive
from nexpatch.constants import (ANDROID_MANIFEST_XML, EMBEDDED_MODULES_ASSET_PATH,
                                MODULE_INIT_LIST_PATH, MODULE_META_KEY)
from nexpatch.errors import (CorruptArchive, EntryNotFound, IOFailure, MalformedManifest,
                             NotAXposedModule)
from nexpatch.log import PatchLogger
from nexpatch.manifest import ManifestEditor
from nexpatch.request import EMBEDDED, REJECTED, SKIPPED, LoadingMode, ModuleOutcome


def validate_module(path: os.PathLike) -> Optional[str]:
    """
    Check that `path` is a module archive and return its package name.
    Raises NotAXposedModule for anything that is not.
    """
    path = Path(path)
    if not path.is_file():
        raise NotAXposedModule(f"{path} does not exist")
    try:
        with ArchiveReader(path) as reader:
            editor = ManifestEditor.from_bytes(reader.read(ANDROID_MANIFEST_XML))
            has_init_list = reader.has(MODULE_INIT_LIST_PATH)
    except (CorruptArchive, EntryNotFound, MalformedManifest, IOFailure) as exc:
        raise NotAXposedModule(f"{path.name} is not a valid package archive ({exc})") from exc

    has_meta = False
    if editor.tree.first(editor.tree.root, "application") is not None:
        has_meta = editor.meta_data(MODULE_META_KEY) is not None
    if not (has_meta or has_init_list):
        raise NotAXposedModule(f"{path.name} declares no {MODULE_META_KEY} meta-data")
    return editor.package


def _unique_entry(staged: StagedArchive, file_name: str) -> str:
    stem, dot, ext = file_name.rpartition(".")
    if not dot:
        stem, ext = file_name, ""
    suffix = f".{ext}" if ext else ""
    candidate = EMBEDDED_MODULES_ASSET_PATH + file_name
    n = 1
    while staged.has(candidate):
        candidate = f"{EMBEDDED_MODULES_ASSET_PATH}{stem}-{n}{suffix}"
        n += 1
    return candidate


class ModuleEmbedder:
    def __init__(self, logger: PatchLogger):
        self.log = logger

    def embed(self, staged: StagedArchive, paths: Iterable[os.PathLike],
              mode: LoadingMode) -> List[ModuleOutcome]:
        outcomes = []
        for p in paths:
            p = Path(p)
            if mode is not LoadingMode.PORTABLE:
                self.log.i(f"Skipping module {p.name}: modules are served by the manager in local mode")
                outcomes.append(ModuleOutcome(p, SKIPPED))
                continue
            try:
                package = validate_module(p)
            except NotAXposedModule as exc:
                self.log.e(str(exc))
                outcomes.append(ModuleOutcome(p, REJECTED, error=str(exc)))
                continue
            entry = _unique_entry(staged, p.name)
            staged.put_file(entry, p)
            self.log.i(f"Embedded module {package or p.name} as {entry}")
            outcomes.append(ModuleOutcome(p, EMBEDDED, entry_name=entry, package_name=package))
        return outcomes


def embedded_module_names(reader: ArchiveReader) -> List[str]:
    return [n for n in reader.names()
            if n.startswith(EMBEDDED_MODULES_ASSET_PATH) and not n.endswith("/")]


def extract_embedded_modules(reader: ArchiveReader, dest: os.PathLike) -> List[Path]:
    """Write every embedded module of a patched archive into `dest`."""
    dest = Path(dest)
    out = []
    try:
        dest.mkdir(parents=True, exist_ok=True)
        for name in embedded_module_names(reader):
            target = dest / name[len(EMBEDDED_MODULES_ASSET_PATH):].replace("/", "_")
            with open(target, "wb") as fh:
                for block in reader.iter_content(name):
                    fh.write(block)
            out.append(target)
    except OSError as exc:
        raise IOFailure(f"{dest}: {exc}") from exc
    return out
