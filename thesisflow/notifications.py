# thesisflow/notifications.py
from __future__ import annotations

from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List, Literal
import json
import os
import re
import uuid

from rich import print as rprint

from thesisflow.audit import _FileLock

# -----------------------------------------------------------------------------
# Paths & constants
# -----------------------------------------------------------------------------
DATA_DIR = Path(os.getenv("THESIS_DATA_DIR", Path.cwd() / "data"))

# Rotation policy (bytes). When exceeded, rotate to notifications-YYYYMMDD_HHMMSS.jsonl
JSONL_ROTATE_BYTES = int(os.getenv("THESIS_NOTIF_JSONL_ROTATE", "10485760"))  # 10 MB
JSONL_RETENTION = int(os.getenv("THESIS_NOTIF_JSONL_RETENTION", "5"))

# Large payloads are summarized
PAYLOAD_MAX_BYTES = int(os.getenv("THESIS_NOTIF_PAYLOAD_MAX", "100000"))
PAYLOAD_PREVIEW_CHARS = int(os.getenv("THESIS_NOTIF_PAYLOAD_PREVIEW", "4096"))

CONSOLE_ENABLED = os.getenv("THESIS_NOTIF_CONSOLE", "1") not in {"0", "false", "False"}

Level = Literal["debug", "info", "warn", "error", "success"]
_LEVELS_SET = {"debug", "info", "warn", "error", "success"}

SCHEMA_VERSION = 1


@dataclass
class Notification:
    id: str
    ts: str  # ISO 8601 UTC with 'Z'

    event: str
    level: Level
    payload: Dict[str, Any] = field(default_factory=dict)

    source: str = "engine"                # engine|api|cli|test
    actor: Optional[str] = None           # user id or "system"
    topic: Optional[str] = None           # assignment|review|signing|thesis|plagiarism
    audience: Optional[str] = None        # student|staff|approver|all
    correlation_id: Optional[str] = None  # operation-log id for multi-step flows

    schema_version: int = SCHEMA_VERSION

    @staticmethod
    def now_iso() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")


def _mask_pii_text(s: str) -> str:
    return _EMAIL_RE.sub(lambda m: f"{m.group(1)[:2]}***@***", s)


def _sanitize(obj: Any) -> Any:
    """Ensure payload is JSON-serializable and lightly mask PII in strings."""
    if isinstance(obj, str):
        return _mask_pii_text(obj)
    if isinstance(obj, dict):
        return {str(k): _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_sanitize(x) for x in obj]
    if obj is None or isinstance(obj, (int, float, bool)):
        return obj
    return _mask_pii_text(str(obj))


def _limit_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Cap payload size; if too large, replace with a compact preview."""
    blob = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    if len(blob) <= PAYLOAD_MAX_BYTES:
        return payload
    return {
        "_truncated": True,
        "size_bytes": len(blob),
        "preview": blob.decode("utf-8")[:PAYLOAD_PREVIEW_CHARS],
    }


class Notifier:
    """JSONL-backed notification sink with an optional rich console mirror."""

    def __init__(self, directory: Optional[Path] = None, *, console: bool = CONSOLE_ENABLED):
        self.directory = Path(directory or DATA_DIR)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / "notifications.jsonl"
        self._lock = self.directory / ".notifications.jsonl.lock"
        self.console = console
        self.dropped_writes = 0

    def _rotate_if_needed(self, incoming: int) -> None:
        if not self.path.exists() or self.path.stat().st_size + incoming <= JSONL_ROTATE_BYTES:
            return
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        with _FileLock(self._lock):
            if self.path.exists():
                self.path.replace(self.path.with_name(f"notifications-{stamp}.jsonl"))
            rots = sorted(self.directory.glob("notifications-*.jsonl"))
            for old in rots[:-JSONL_RETENTION] if len(rots) > JSONL_RETENTION else []:
                old.unlink(missing_ok=True)

    def _append(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False) + "\n"
        try:
            self._rotate_if_needed(len(line.encode("utf-8")))
            with _FileLock(self._lock):
                fd = os.open(str(self.path), os.O_CREAT | os.O_WRONLY | os.O_APPEND)
                try:
                    os.write(fd, line.encode("utf-8"))
                    os.fsync(fd)
                finally:
                    os.close(fd)
        except OSError:
            self.dropped_writes += 1

    def _console_log(self, n: Notification) -> None:
        if not self.console:
            return
        lvl = n.level.upper()
        color = {
            "DEBUG": "dim",
            "INFO": "cyan",
            "WARN": "yellow",
            "ERROR": "red",
            "SUCCESS": "green",
        }.get(lvl, "white")
        payload_text = json.dumps(n.payload, ensure_ascii=False)
        rprint(f"[{color}]{n.ts} | [{lvl}] {n.event} :: actor={n.actor or '-'} "
               f"topic={n.topic or '-'} payload={payload_text}[/]")

    def emit(
        self,
        event: str,
        payload: Dict[str, Any],
        *,
        level: Level = "info",
        source: str = "engine",
        actor: Optional[str] = None,
        topic: Optional[str] = None,
        audience: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Notification:
        """Create and persist a notification."""
        lvl = (level or "info").lower()
        if lvl not in _LEVELS_SET:
            lvl = "info"
        n = Notification(
            id=str(uuid.uuid4()),
            ts=Notification.now_iso(),
            event=str(event),
            level=lvl,  # type: ignore[arg-type]
            payload=_limit_payload(_sanitize(payload or {})),
            source=str(source or "engine"),
            actor=actor,
            topic=topic,
            audience=audience,
            correlation_id=correlation_id,
        )
        self._append(asdict(n))
        self._console_log(n)
        return n

    def list_recent(self, limit: int = 20, event: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the last N notifications, optionally filtered by event."""
        if not self.path.exists():
            return []
        items = [json.loads(x) for x in self.path.read_text(encoding="utf-8").splitlines() if x.strip()]
        if event:
            items = [x for x in items if x.get("event") == event]
        return items[-abs(limit):]

    def purge_all(self) -> None:
        """Purge all notifications (use with care)."""
        with _FileLock(self._lock):
            self.path.unlink(missing_ok=True)
