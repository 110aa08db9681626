# thesisflow/files.py
from __future__ import annotations
from pathlib import Path
from typing import BinaryIO, Optional, Union
import hashlib
import os
import re
import shutil
import uuid

from thesisflow.errors import StorageError, ValidationError
from thesisflow.rules import Role, Tier, as_role

# === Directories ===
FILES_DIR = Path(os.getenv("THESIS_FILES_DIR", Path.cwd() / "files"))

# === Policies ===
ALLOWED_PDF_EXT = {".pdf"}
PDF_MAX_BYTES = int(os.getenv("THESIS_PDF_MAX_BYTES", str(50 * 1024 * 1024)))  # 50 MB

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

PathLike = Union[str, Path]


# === Hash / signature ===
def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _pdf_has_eof(path: Path) -> bool:
    """Light check for '%%EOF' near the end of file to reduce false positives."""
    size = path.stat().st_size
    if size < 8:
        return False
    to_read = min(4096, size)
    with path.open("rb") as f:
        f.seek(-to_read, os.SEEK_END)
        tail = f.read(to_read)
    return b"%%EOF" in tail


def check_pdf(path: PathLike, *, label: str = "file", max_bytes: int = PDF_MAX_BYTES) -> Path:
    """
    Validate an uploaded document before it enters the store:
    - exists, non-empty, within size cap
    - starts with %PDF and has %%EOF near the end
    Raises ValidationError naming the offending `label`.
    """
    p = Path(path)
    if not p.is_file():
        raise ValidationError(f"{label} does not exist", {"file": label})
    size = p.stat().st_size
    if size == 0 or size > max_bytes:
        raise ValidationError(f"{label} is empty or exceeds {max_bytes} bytes",
                              {"file": label, "size": size, "max_bytes": max_bytes})
    with p.open("rb") as f:
        header = f.read(5)
    if not header.startswith(b"%PDF") or not _pdf_has_eof(p):
        raise ValidationError(f"{label} is not a valid PDF (header/EOF)", {"file": label})
    return p


# === Atomic write helpers ===
def _fsync_dir(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _atomic_copy(src: Path, dst: Path) -> None:
    """
    Copy file atomically:
    - copy to tmp in same directory, fsync
    - os.replace(tmp, dst), fsync destination directory
    """
    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_name(f".{dst.name}.tmp.{uuid.uuid4().hex}")
    try:
        with src.open("rb") as fin, open(tmp, "wb") as fout:
            shutil.copyfileobj(fin, fout, length=1024 * 1024)
            fout.flush()
            os.fsync(fout.fileno())
        os.replace(tmp, dst)
    finally:
        tmp.unlink(missing_ok=True)
    _fsync_dir(dst.parent)


class ArtifactStore:
    """
    Content-addressed store for thesis documents.

    Handles look like `"{tier}/{role}/{thesis_id}/{sha256}.pdf"` and are opaque to
    callers. Two uploads with different content never share a handle, so concurrent
    signers cannot overwrite each other; re-uploading identical bytes is idempotent.
    """

    def __init__(self, root: Optional[PathLike] = None):
        self.root = Path(root or FILES_DIR)
        self.root.mkdir(parents=True, exist_ok=True)

    # ---- handle <-> path
    def _handle_for(self, thesis_id: str, role, tier, digest: str) -> str:
        if not _SAFE_ID.match(str(thesis_id or "")):
            raise ValidationError("invalid thesis id for artifact", {"thesis_id": thesis_id})
        return f"{Tier(tier).value}/{as_role(role).value}/{thesis_id}/{digest}.pdf"

    def path(self, handle: str) -> Path:
        """Resolve a handle inside the store root (path traversal is rejected)."""
        root = self.root.resolve()
        target = (root / handle).resolve()
        if root not in target.parents:
            raise ValidationError("artifact handle escapes the store", {"handle": handle})
        return target

    # ---- public API
    def put(self, thesis_id: str, role, tier, src: PathLike, *, label: str = "file") -> str:
        """Validate and copy `src` into the store; returns the new handle."""
        src_p = check_pdf(src, label=label)
        digest = _sha256(src_p)
        handle = self._handle_for(thesis_id, role, tier, digest)
        dst = self.path(handle)
        if dst.exists():
            return handle
        try:
            _atomic_copy(src_p, dst)
            (dst.with_suffix(dst.suffix + ".sha256")).write_text(digest, encoding="utf-8")
        except OSError as ex:
            dst.unlink(missing_ok=True)
            raise StorageError("failed to store artifact",
                               {"thesis_id": thesis_id, "role": as_role(role).value,
                                "tier": Tier(tier).value, "error": str(ex)}) from ex
        return handle

    def put_pair(self, thesis_id: str, tier, supervisor_src: PathLike, reviewer_src: PathLike):
        """
        Store the supervisor-side and reviewer-side documents of one countersignature.
        Both are validated before either is written; a failure on the second removes
        the first if this call created it.
        """
        check_pdf(supervisor_src, label="supervisor_file")
        check_pdf(reviewer_src, label="reviewer_file")
        first_handle = self._handle_for(thesis_id, Role.SUPERVISOR, tier, _sha256(Path(supervisor_src)))
        had_first = self.exists(first_handle)
        first = self.put(thesis_id, Role.SUPERVISOR, tier, supervisor_src, label="supervisor_file")
        try:
            second = self.put(thesis_id, Role.REVIEWER, tier, reviewer_src, label="reviewer_file")
        except StorageError:
            if not had_first:
                self.delete(first)
            raise
        return first, second

    def copy(self, handle: str, thesis_id: str, role, tier) -> str:
        """Re-file an existing artifact under another (role, tier) slot."""
        return self.put(thesis_id, role, tier, self.path(handle))

    def exists(self, handle: Optional[str]) -> bool:
        if not handle:
            return False
        try:
            return self.path(handle).is_file()
        except ValidationError:
            return False

    def open(self, handle: str) -> BinaryIO:
        if not self.exists(handle):
            raise StorageError("artifact missing from store", {"handle": handle})
        return self.path(handle).open("rb")

    def read_bytes(self, handle: str) -> bytes:
        with self.open(handle) as f:
            return f.read()

    def delete(self, handle: Optional[str]) -> bool:
        """Remove an artifact and its sidecar. Returns False when nothing was there."""
        if not handle:
            return False
        p = self.path(handle)
        if not p.exists():
            return False
        try:
            p.unlink()
            p.with_suffix(p.suffix + ".sha256").unlink(missing_ok=True)
        except OSError as ex:
            raise StorageError("failed to delete artifact", {"handle": handle, "error": str(ex)}) from ex
        return True
