"""
Document repository for thesisflow.

- One collection per entity kind (users, theses, requests, operations)
- Documents are JSON objects keyed by a UUID string
- get / put / partial update / delete by id; a None value in `update` removes the key
- JsonFileRepository: sidecar lock with stale-lock cleanup, atomic replace with
  directory fsync, rotating backups and backup fallback on corrupt reads
- InMemoryRepository: dict-backed fake with the same contract
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional
import copy
import json
import os
import shutil
import time
import uuid

from thesisflow.errors import NotFoundError, StorageError

JSON_INDENT = 2
JSON_ENSURE_ASCII = False

# Locking
LOCK_TIMEOUT_SEC = 10.0
LOCK_SLEEP_SEC = 0.05
STALE_LOCK_SEC = 60.0

# Backup retention
BACKUP_RETAIN_PER_FILE = int(os.getenv("THESIS_BACKUP_RETAIN", "10"))  # 0 disables pruning

COLLECTIONS = ("users", "theses", "requests", "operations")


def now_iso() -> str:
    """Return UTC ISO-8601 with milliseconds and trailing 'Z'."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


def _apply_partial(doc: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    for k, v in fields.items():
        if v is None:
            out.pop(k, None)
        else:
            out[k] = v
    return out


# =========================
# Interface
# =========================
class DocumentRepository(ABC):
    """Per-key atomic document store. No cross-key transactions."""

    name: str = "documents"

    @abstractmethod
    def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update(self, doc_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def delete(self, doc_id: str) -> bool:
        ...

    @abstractmethod
    def all(self) -> List[Dict[str, Any]]:
        ...

    def require(self, doc_id: Optional[str], what: str = "document") -> Dict[str, Any]:
        doc = self.get(doc_id) if doc_id else None
        if doc is None:
            raise NotFoundError(f"{what} not found", {"id": doc_id, "collection": self.name})
        return doc

    def find(self, **equals: Any) -> List[Dict[str, Any]]:
        return [d for d in self.all() if all(d.get(k) == v for k, v in equals.items())]

    def first(self, **equals: Any) -> Optional[Dict[str, Any]]:
        return next(iter(self.find(**equals)), None)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.all())


class InMemoryRepository(DocumentRepository):
    def __init__(self, name: str = "documents"):
        self.name = name
        self._docs: Dict[str, Dict[str, Any]] = {}

    def get(self, doc_id):
        doc = self._docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def put(self, doc_id, doc):
        stored = copy.deepcopy(dict(doc, id=doc_id))
        self._docs[doc_id] = stored
        return copy.deepcopy(stored)

    def update(self, doc_id, fields):
        if doc_id not in self._docs:
            raise NotFoundError(f"{self.name} document not found", {"id": doc_id})
        self._docs[doc_id] = _apply_partial(self._docs[doc_id], copy.deepcopy(fields))
        return copy.deepcopy(self._docs[doc_id])

    def delete(self, doc_id):
        return self._docs.pop(doc_id, None) is not None

    def all(self):
        return [copy.deepcopy(d) for d in self._docs.values()]


# =========================
# Lock helpers (sidecar .lock)
# =========================
@dataclass
class _Lock:
    path: Path
    locked: bool = False


def _fsync_dir(path: Path) -> None:
    """Fsync the directory so a rename survives a crash. Not all platforms allow it."""
    try:
        dfd = os.open(os.fspath(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dfd)
    except OSError:
        pass
    finally:
        os.close(dfd)


def _acquire_lock(path: Path, timeout: float = LOCK_TIMEOUT_SEC) -> _Lock:
    """
    Create-only sidecar lock. Cleans up stale locks (older than STALE_LOCK_SEC).
    Non-reentrant.
    """
    lockp = path.with_suffix(path.suffix + ".lock")
    start = time.time()
    while True:
        try:
            fd = os.open(os.fspath(lockp), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            try:
                os.write(fd, str(time.time()).encode("utf-8"))
            finally:
                os.close(fd)
            return _Lock(lockp, True)
        except FileExistsError:
            try:
                if time.time() - lockp.stat().st_mtime > STALE_LOCK_SEC:
                    lockp.unlink(missing_ok=True)
                    continue
            except FileNotFoundError:
                continue
            if time.time() - start > timeout:
                raise StorageError(f"Timeout acquiring lock for {path.name}", {"path": str(path)})
            time.sleep(LOCK_SLEEP_SEC)


def _release_lock(lock: _Lock) -> None:
    if lock.locked:
        lock.path.unlink(missing_ok=True)


class JsonFileRepository(DocumentRepository):
    """
    One JSON object file per collection: {id: document}.
    Every write runs under the sidecar lock: load, mutate, back up, replace atomically.
    """

    def __init__(self, path: Path, *, audit=None):
        self.path = Path(path)
        self.name = self.path.stem
        self.backup_dir = self.path.parent / "_bak"
        self.audit = audit
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._atomic_write_text(json.dumps({}, indent=JSON_INDENT))
        except OSError as ex:
            raise StorageError(f"cannot initialise collection {self.name}", {"error": str(ex)}) from ex

    # ---- atomic IO & backups
    def _atomic_write_text(self, text: str) -> None:
        tmp = self.path.with_suffix(self.path.suffix + f".tmp.{uuid.uuid4().hex}")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)
        _fsync_dir(self.path.parent)

    def _rotate_backup(self) -> None:
        """Copy the current file into _bak/ with a timestamp suffix and prune old ones."""
        if not self.path.exists():
            return
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        shutil.copy2(self.path, self.backup_dir / f"{self.name}_{ts}.json")
        if BACKUP_RETAIN_PER_FILE > 0:
            snaps = sorted(self.backup_dir.glob(f"{self.name}_*.json"), reverse=True)
            for old in snaps[BACKUP_RETAIN_PER_FILE:]:
                old.unlink(missing_ok=True)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        """
        Read the collection. On corruption:
          - try the newest backup snapshots
          - if all fail, raise StorageError (an empty collection would silently lose data)
        Emits an audit WARN when the primary read fails.
        """
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
            raise ValueError("collection root must be an object")
        except (OSError, ValueError) as ex:
            if self.audit is not None:
                self.audit.warn("repo", "JSON_READ_FAILED", f"{self.path.name}: {ex}")
            for cand in sorted(self.backup_dir.glob(f"{self.name}_*.json"), reverse=True):
                try:
                    data = json.loads(cand.read_text(encoding="utf-8"))
                except (OSError, ValueError):
                    continue
                if isinstance(data, dict):
                    return data
            raise StorageError(f"collection {self.name} is unreadable", {"error": str(ex)}) from ex

    def _transact(self, fn: Callable[[Dict[str, Dict[str, Any]]], Any]) -> Any:
        """
        Transactional update:
          1) acquire lock  2) load  3) apply fn(data)  4) back up + write atomically
        """
        lock = _acquire_lock(self.path)
        try:
            data = self._load()
            ret = fn(data)
            self._rotate_backup()
            self._atomic_write_text(json.dumps(data, ensure_ascii=JSON_ENSURE_ASCII, indent=JSON_INDENT))
            return ret
        except OSError as ex:
            raise StorageError(f"write to {self.name} failed", {"error": str(ex)}) from ex
        finally:
            _release_lock(lock)

    # ---- DocumentRepository
    def get(self, doc_id):
        doc = self._load().get(doc_id)
        return doc if doc is None else dict(doc)

    def put(self, doc_id, doc):
        stored = dict(doc, id=doc_id)

        def _fn(data):
            data[doc_id] = stored
            return stored

        return self._transact(_fn)

    def update(self, doc_id, fields):
        def _fn(data):
            if doc_id not in data:
                raise NotFoundError(f"{self.name} document not found", {"id": doc_id})
            data[doc_id] = _apply_partial(data[doc_id], fields)
            return data[doc_id]

        return self._transact(_fn)

    def delete(self, doc_id):
        return self._transact(lambda data: data.pop(doc_id, None) is not None)

    def all(self):
        return list(self._load().values())


class Store:
    """Bundle of the collections the engine works with."""

    def __init__(self, users: DocumentRepository, theses: DocumentRepository,
                 requests: DocumentRepository, operations: DocumentRepository):
        self.users = users
        self.theses = theses
        self.requests = requests
        self.operations = operations

    @classmethod
    def in_memory(cls) -> "Store":
        return cls(*(InMemoryRepository(name) for name in COLLECTIONS))

    @classmethod
    def on_disk(cls, data_dir: Path, *, audit=None) -> "Store":
        data_dir = Path(data_dir)
        return cls(*(JsonFileRepository(data_dir / f"{name}.json", audit=audit) for name in COLLECTIONS))

    def thesis_of(self, student_id: str) -> Optional[Dict[str, Any]]:
        return self.theses.first(student=student_id)
