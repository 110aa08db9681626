# thesisflow/audit.py
from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Literal, Dict, Any, List
import json
import os
import re

# ------------------------------------------------------------------------------------
# Paths & policy (ENV overrideable)
# ------------------------------------------------------------------------------------
DATA_DIR = Path(os.getenv("THESIS_DATA_DIR", Path.cwd() / "data"))

ROTATE_BYTES = int(os.getenv("THESIS_AUDIT_ROTATE", "10485760"))  # 10 MB default
RETENTION = int(os.getenv("THESIS_AUDIT_RETENTION", "7"))         # keep last 7 rotated files

SCHEMA_VERSION = 1

Level = Literal["INFO", "WARN", "ERROR", "SECURITY"]

# ------------------------------------------------------------------------------------
# Sanitization and masking (anti log-injection and light PII masking)
# ------------------------------------------------------------------------------------
_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")
_LONG_DIGIT_RE = re.compile(r"\b(\d{6,})\b")
_CTRL_RE = re.compile(r"[\r\n\t]")


def _mask_pii(s: str) -> str:
    """Mask likely sensitive tokens (emails, long digit sequences)."""
    s = _EMAIL_RE.sub(lambda m: f"{m.group(1)[:2]}***@***", s)
    s = _LONG_DIGIT_RE.sub(lambda m: m.group(1)[:2] + "***", s)
    return s


def _clean_text_col(s: str) -> str:
    """Strip control chars and pipes so one record stays one line."""
    s = _CTRL_RE.sub(" ", s or "")
    s = s.replace("|", "¦")
    if len(s) > 2000:
        s = s[:2000] + "…"
    return s


def _sanitize_extra(obj: Any) -> Any:
    """Make extra JSON-serializable and mask shallow strings."""
    if isinstance(obj, str):
        return _mask_pii(obj)
    if isinstance(obj, dict):
        return {str(k): _sanitize_extra(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_sanitize_extra(x) for x in obj]
    if obj is None or isinstance(obj, (int, float, bool)):
        return obj
    return _mask_pii(str(obj))


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ------------------------------------------------------------------------------------
# File locking (advisory, cross-platform)
# ------------------------------------------------------------------------------------
class _FileLock:
    """Advisory lock on a sidecar file. If the platform refuses, proceeds unlocked."""
    def __init__(self, path: Path):
        self._path = path
        self._fd: Optional[int] = None

    def __enter__(self):
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._fd = os.open(str(self._path), os.O_CREAT | os.O_RDWR)
        try:
            if os.name == "nt":
                import msvcrt  # type: ignore
                msvcrt.locking(self._fd, msvcrt.LK_LOCK, 1)
            else:
                import fcntl  # type: ignore
                fcntl.flock(self._fd, fcntl.LOCK_EX)
        except OSError:
            pass
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._fd is None:
            return
        try:
            if os.name == "nt":
                import msvcrt  # type: ignore
                msvcrt.locking(self._fd, msvcrt.LK_UNLCK, 1)
            else:
                import fcntl  # type: ignore
                fcntl.flock(self._fd, fcntl.LOCK_UN)
        except OSError:
            pass
        finally:
            os.close(self._fd)
            self._fd = None


class AuditLog:
    """
    Append-only audit trail for workflow operations.

    Writes each record twice:
    - `audit.log`   human-readable `ts | LEVEL | who | action | detail`
    - `audit.jsonl` structured record with `extra` (entity ids, step index, ...)

    Audit writes never fail the operation being audited; failed appends are
    counted in `dropped_writes`.
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory or DATA_DIR)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.text_path = self.directory / "audit.log"
        self.json_path = self.directory / "audit.jsonl"
        self._lock_text = self.directory / ".audit.log.lock"
        self._lock_json = self.directory / ".audit.jsonl.lock"
        self.dropped_writes = 0

    # ---- rotation & append
    def _rotate_if_needed(self, target: Path, lock: Path) -> None:
        try:
            size = target.stat().st_size if target.exists() else 0
        except OSError:
            return
        if size < ROTATE_BYTES:
            return
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        with _FileLock(lock):
            if not target.exists():
                return
            target.replace(target.with_name(f"{target.stem}-{stamp}{target.suffix}"))
            rots = sorted(target.parent.glob(f"{target.stem}-*{target.suffix}"))
            for old in rots[:-RETENTION] if len(rots) > RETENTION else []:
                old.unlink(missing_ok=True)

    def _append(self, path: Path, lock: Path, line: str) -> None:
        try:
            self._rotate_if_needed(path, lock)
            with _FileLock(lock):
                fd = os.open(str(path), os.O_CREAT | os.O_WRONLY | os.O_APPEND)
                try:
                    os.write(fd, line.encode("utf-8"))
                    os.fsync(fd)
                finally:
                    os.close(fd)
        except OSError:
            self.dropped_writes += 1

    # ---- public API
    def log(
        self,
        action: str,
        who: str,
        detail: str = "",
        *,
        level: Level = "INFO",
        role: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ts = _timestamp()
        line = (
            f"{ts} | {level:<8} | {_clean_text_col(who):<12} | "
            f"{_clean_text_col(action):<24} | {_clean_text_col(_mask_pii(detail))}\n"
        )
        record = {
            "schema_version": SCHEMA_VERSION,
            "ts": ts,
            "level": level,
            "who": who,
            "role": role,
            "action": action,
            "detail": _mask_pii(detail),
            "extra": _sanitize_extra(extra or {}),
        }
        self._append(self.text_path, self._lock_text, line)
        self._append(self.json_path, self._lock_json, json.dumps(record, ensure_ascii=False) + "\n")
        return record

    def warn(self, who: str, action: str, detail: str = "", **kw) -> Dict[str, Any]:
        return self.log(action, who, detail, level="WARN", **kw)

    def error(self, who: str, action: str, detail: str = "", **kw) -> Dict[str, Any]:
        return self.log(action, who, detail, level="ERROR", **kw)

    def security(self, who: str, action: str, detail: str = "", **kw) -> Dict[str, Any]:
        return self.log(action, who, detail, level="SECURITY", **kw)

    def records(self, limit: int = 100, level: Optional[str] = None) -> List[Dict[str, Any]]:
        """Tail of the structured log, optionally filtered by level."""
        if not self.json_path.exists():
            return []
        out = []
        for raw in self.json_path.read_text(encoding="utf-8").splitlines():
            if not raw.strip():
                continue
            rec = json.loads(raw)
            if level and rec.get("level") != level:
                continue
            out.append(rec)
        return out[-abs(limit):]
