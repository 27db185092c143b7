# dataflow_agent/conversation_store.py
from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from dataflow_agent.workflow_state import ConversationTurn

LOGGER = logging.getLogger("dataflow.store")

_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_.-]")


class ConversationStore(Protocol):
    """Keyed, append-only turn log. get/set are atomic per conversation id."""

    def load(self, conversation_id: str) -> Optional[List[ConversationTurn]]: ...

    def save(self, conversation_id: str, turns: List[ConversationTurn]) -> None: ...

    def delete(self, conversation_id: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._data: Dict[str, List[ConversationTurn]] = {}
        self._lock = threading.RLock()

    def load(self, conversation_id: str) -> Optional[List[ConversationTurn]]:
        with self._lock:
            turns = self._data.get(conversation_id)
            return list(turns) if turns is not None else None

    def save(self, conversation_id: str, turns: List[ConversationTurn]) -> None:
        with self._lock:
            self._data[conversation_id] = list(turns)

    def delete(self, conversation_id: str) -> None:
        with self._lock:
            self._data.pop(conversation_id, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class FileConversationStore:
    """
    One JSON file per conversation under `root`.

    PUBLIC API:
      load(id) -> list[ConversationTurn] | None
      save(id, turns) -> None
      delete(id) -> None
      clear() -> None

    Writes go to a temp file and are moved into place. If the filesystem cannot
    be written the store keeps serving from memory and logs a warning; reads
    prefer the in-memory copy once a conversation has degraded.
    """

    def __init__(self, root: str | Path = "conversations") -> None:
        self.root = Path(root)
        self._memory = InMemoryConversationStore()
        self._degraded: set[str] = set()
        self._lock = threading.RLock()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            LOGGER.warning("store_root_unavailable", extra={"payload": {"root": str(self.root), "error": str(e)}})

    # ------------------------------- helpers ---------------------------------

    def _path(self, conversation_id: str) -> Path:
        # readable prefix; the digest keeps ids that sanitize alike apart
        safe = _SAFE_ID_RE.sub("_", conversation_id)[:64] or "_"
        digest = hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()[:16]
        return self.root / f"{safe}-{digest}.json"

    @staticmethod
    def _write_json_atomic(path: Path, obj: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any]:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Expected object in {path}, got {type(data)}")
        return data

    # ------------------------------ core I/O ----------------------------------

    def load(self, conversation_id: str) -> Optional[List[ConversationTurn]]:
        with self._lock:
            if conversation_id in self._degraded:
                return self._memory.load(conversation_id)
            path = self._path(conversation_id)
            if not path.exists():
                return None
            raw = self._read_json(path)
            return [ConversationTurn.model_validate(t) for t in raw.get("turns", [])]

    def save(self, conversation_id: str, turns: List[ConversationTurn]) -> None:
        payload = {
            "conversation_id": conversation_id,
            "turns": [t.model_dump(mode="json") for t in turns],
        }
        with self._lock:
            try:
                self._write_json_atomic(self._path(conversation_id), payload)
            except OSError as e:
                LOGGER.warning(
                    "store_write_failed_memory_fallback",
                    extra={"correlation_id": conversation_id, "payload": {"error": str(e)}},
                )
                self._degraded.add(conversation_id)
                self._memory.save(conversation_id, turns)
                return
            self._degraded.discard(conversation_id)
            self._memory.delete(conversation_id)

    def delete(self, conversation_id: str) -> None:
        with self._lock:
            self._memory.delete(conversation_id)
            self._degraded.discard(conversation_id)
            self._path(conversation_id).unlink(missing_ok=True)

    def clear(self) -> None:
        with self._lock:
            self._memory.clear()
            self._degraded.clear()
            if self.root.exists():
                for p in self.root.glob("*.json"):
                    p.unlink(missing_ok=True)
