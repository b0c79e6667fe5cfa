"""Append-only activity log, written behind the request on a single worker thread.

Logging is best-effort: a failed write is reported on the console and
otherwise ignored, so it can never fail the operation that triggered it.
"""

from __future__ import annotations

import concurrent.futures
import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from records import new_id, utc_now_iso


MAX_PAGE = 500
DEFAULT_PAGE = 50


class ActivityLog:
    """JSONL activity records keyed by user id (memory-only when *path* is None)."""

    def __init__(self, path: Path | None = None):
        self.path = path
        self._memory: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="dendro-activity")

    def log(
        self,
        user_id: str,
        action: str,
        payload: Dict[str, Any] | None = None,
        *,
        tree_id: str | None = None,
        conversation_id: str | None = None,
    ) -> None:
        """Queue one record; never raises."""
        record = {
            "id": new_id(),
            "userId": user_id,
            "action": action,
            "payload": payload or {},
            "treeId": tree_id,
            "conversationId": conversation_id,
            "createdAt": utc_now_iso(),
        }
        try:
            self._executor.submit(self._write, record)
        except RuntimeError as exc:  # executor already shut down
            print(f"[Dendro] Activity log dropped {action}: {exc}")

    def _write(self, record: Dict[str, Any]) -> None:
        try:
            with self._lock:
                if self.path is None:
                    self._memory.append(record)
                    return
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except Exception as exc:
            print(f"[Dendro] Activity log write failed: {exc}")

    def flush(self, timeout: float = 5.0) -> None:
        """Wait until every queued record has been written."""
        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _read_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            if self.path is None:
                return list(self._memory)
            if not self.path.exists():
                return []
            records = []
            for line in self.path.read_text(encoding="utf-8").splitlines():
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(obj, dict):
                    records.append(obj)
            return records

    def entries(
        self,
        user_id: str,
        limit: int = DEFAULT_PAGE,
        action: Optional[str] = None,
        before: Optional[str] = None,
        tree_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Newest-first page of a user's records plus a ``hasMore`` flag.

        *action* matches as a prefix ("url." selects url.scraped and url.removed);
        *before* keeps records strictly older than the given timestamp.
        """
        limit = max(1, min(int(limit), MAX_PAGE))
        self.flush()
        matches = []
        for rec in reversed(self._read_all()):
            if rec.get("userId") != user_id:
                continue
            if action and not str(rec.get("action", "")).startswith(action):
                continue
            if before and not str(rec.get("createdAt", "")) < before:
                continue
            if tree_id and rec.get("treeId") != tree_id:
                continue
            if conversation_id and rec.get("conversationId") != conversation_id:
                continue
            matches.append(rec)
            if len(matches) > limit:
                break
        return {"entries": matches[:limit], "hasMore": len(matches) > limit}
