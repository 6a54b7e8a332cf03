"""Source archive handling for module publishing.

Extracts SCM archives into a scratch directory without ever writing
outside it, locates and validates the module root, and repackages the
module as a gzipped tarball with a provenance manifest.
"""

import hashlib
import io
import stat
import tarfile
import zipfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from tfregistry.logging_config import get_logger
from tfregistry.scm.base import ArchiveFormat

logger = get_logger(__name__)

MANIFEST_NAME = ".terraform-registry-commit"
DEFAULT_MAX_EXTRACTED_BYTES = 512 * 1024 * 1024
MODULE_FILE_SUFFIXES = (".tf", ".tf.json")
# Never shipped in a published module
EXCLUDED_DIRS = frozenset({".git", ".terraform"})


class PublishError(Exception):
    """Base class for terminal publish failures. Messages are persisted."""


class UnsafeArchiveError(PublishError):
    pass


class InvalidModuleStructure(PublishError):
    pass


def _safe_target(dest: Path, name: str) -> Path:
    """Map an archive entry name to a path under ``dest`` or raise."""
    normalized = name.replace("\\", "/")
    entry = PurePosixPath(normalized)
    if entry.is_absolute() or normalized.startswith("/") or (
        len(normalized) > 1 and normalized[1] == ":"
    ):
        raise UnsafeArchiveError(f"archive entry has an absolute path: {name}")
    if ".." in entry.parts:
        raise UnsafeArchiveError(f"archive entry escapes extraction root: {name}")
    target = (dest / Path(*entry.parts)).resolve() if entry.parts else dest.resolve()
    if not target.is_relative_to(dest.resolve()):
        raise UnsafeArchiveError(f"archive entry escapes extraction root: {name}")
    return target


class _ExtractionBudget:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0

    def charge(self, size: int, name: str) -> None:
        self.used += size
        if self.used > self.limit:
            raise UnsafeArchiveError(
                f"archive expands beyond {self.limit} bytes (at entry {name})"
            )


def _copy_member(src: BinaryIO, target: Path, budget: _ExtractionBudget, name: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "wb") as out:
        while chunk := src.read(64 * 1024):
            budget.charge(len(chunk), name)
            out.write(chunk)


def _extract_tar(archive: Path, dest: Path, budget: _ExtractionBudget) -> None:
    with tarfile.open(archive, "r:*") as tar:
        for member in tar:
            target = _safe_target(dest, member.name)
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                src = tar.extractfile(member)
                if src is None:
                    continue
                with src:
                    _copy_member(src, target, budget, member.name)
            else:
                logger.debug("Skipping non-regular archive entry", entry=member.name)


def _extract_zip(archive: Path, dest: Path, budget: _ExtractionBudget) -> None:
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            target = _safe_target(dest, info.filename)
            mode = info.external_attr >> 16
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
            elif mode and not stat.S_ISREG(mode):
                logger.debug("Skipping non-regular archive entry", entry=info.filename)
            else:
                with zf.open(info) as src:
                    _copy_member(src, target, budget, info.filename)


def safe_extract(
    archive: Path,
    dest: Path,
    fmt: ArchiveFormat,
    max_bytes: int = DEFAULT_MAX_EXTRACTED_BYTES,
) -> None:
    """Extract a tar.gz or zip archive strictly inside ``dest``.

    Absolute entries and entries that resolve outside ``dest`` abort the
    extraction. Links and special files are skipped.
    """
    dest.mkdir(parents=True, exist_ok=True)
    budget = _ExtractionBudget(max_bytes)
    try:
        if fmt == ArchiveFormat.ZIPBALL:
            _extract_zip(archive, dest, budget)
        else:
            _extract_tar(archive, dest, budget)
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise InvalidModuleStructure(f"could not read source archive: {e}") from None


def locate_module_root(extract_root: Path, module_path: str) -> Path:
    """Find the module directory inside an extracted archive.

    Provider archives usually wrap the tree in one top-level directory
    (``owner-repo-sha/``); that wrapper is unwrapped before applying the
    link's module subpath.
    """
    base = extract_root
    entries = list(base.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        base = entries[0]

    subpath = module_path.strip("/")
    if not subpath:
        return base
    candidate = (base / subpath).resolve()
    if not candidate.is_relative_to(base.resolve()):
        raise InvalidModuleStructure(f"module path escapes repository root: {module_path}")
    if not candidate.is_dir():
        raise InvalidModuleStructure(f"module path not found in repository: {module_path}")
    return candidate


def validate_module(root: Path) -> None:
    """A module root must contain at least one Terraform configuration file."""
    for entry in root.iterdir():
        if entry.is_file() and entry.name.endswith(MODULE_FILE_SUFFIXES):
            return
    raise InvalidModuleStructure("invalid module structure: no .tf files in module root")


class _HashingWriter:
    """File wrapper that hashes and counts every byte written through it."""

    mode = "wb"

    def __init__(self, fileobj: BinaryIO) -> None:
        self._fileobj = fileobj
        self.digest = hashlib.sha256()
        self.size = 0

    def write(self, data: bytes) -> int:
        self.digest.update(data)
        self.size += len(data)
        return self._fileobj.write(data)

    def flush(self) -> None:
        self._fileobj.flush()


def _module_files(root: Path) -> list[Path]:
    files = []
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root)
        if any(part in EXCLUDED_DIRS for part in rel.parts):
            continue
        if path.is_symlink() or not path.is_file():
            continue
        files.append(path)
    return files


def manifest_content(commit_sha: str, published_at: datetime) -> bytes:
    return f"commit: {commit_sha}\npublished: {published_at.isoformat(timespec='seconds')}\n".encode()


def build_module_tarball(
    src: Path, dest: Path, commit_sha: str, published_at: datetime
) -> tuple[str, int]:
    """Repackage a module directory. Returns (sha256 hex, size in bytes)."""
    manifest = manifest_content(commit_sha, published_at)
    with open(dest, "wb") as raw:
        writer = _HashingWriter(raw)
        with tarfile.open(fileobj=writer, mode="w:gz") as tar:  # type: ignore[call-overload]
            info = tarfile.TarInfo(MANIFEST_NAME)
            info.size = len(manifest)
            info.mode = 0o644
            info.mtime = int(published_at.timestamp())
            tar.addfile(info, fileobj=io.BytesIO(manifest))
            for path in _module_files(src):
                tar.add(path, arcname=path.relative_to(src).as_posix(), recursive=False)
    return writer.digest.hexdigest(), writer.size

