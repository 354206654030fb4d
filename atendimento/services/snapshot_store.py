from __future__ import annotations

import asyncio
import json
import logging
from threading import Lock
from typing import Any, Callable, Iterator, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from atendimento.core.config import SNAPSHOT_DEBOUNCE_MS
from atendimento.core.database import SessionLocal
from atendimento.models.conversation_snapshot import ConversationSnapshot

logger = logging.getLogger(__name__)

Snapshot = dict[str, dict[str, Any]]


class StateStore(Protocol):
    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> list[str]:
        ...


class InMemoryStateStore:
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data.keys())

    def values(self) -> Iterator[Any]:
        with self._lock:
            items = list(self._data.values())
        return iter(items)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class SnapshotBackend(Protocol):
    def load_all(self) -> Snapshot:
        ...

    def save_all(self, snapshot: Snapshot) -> None:
        ...


class SqlAlchemySnapshotBackend:
    """Uma linha por (kind, key) na tabela conversation_snapshots."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.session_factory = session_factory

    def load_all(self) -> Snapshot:
        db = self.session_factory()
        try:
            rows = db.query(ConversationSnapshot).all()
            result: Snapshot = {}
            for row in rows:
                try:
                    result.setdefault(row.kind, {})[row.key] = json.loads(row.payload_json)
                except ValueError:
                    logger.warning("Snapshot inválido ignorado: %s/%s", row.kind, row.key)
            return result
        finally:
            db.close()

    def save_all(self, snapshot: Snapshot) -> None:
        db = self.session_factory()
        try:
            existing = {(row.kind, row.key): row for row in db.query(ConversationSnapshot).all()}
            for kind, entries in snapshot.items():
                for key, payload in entries.items():
                    payload_json = json.dumps(payload, ensure_ascii=False, default=str)
                    row = existing.pop((kind, key), None)
                    if row is None:
                        db.add(ConversationSnapshot(kind=kind, key=key, payload_json=payload_json))
                    elif row.payload_json != payload_json:
                        row.payload_json = payload_json
            for (kind, _key), row in existing.items():
                if kind in snapshot:
                    db.delete(row)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()


class DebouncedSnapshotWriter:
    """Agrupa gravações de snapshot dentro da janela de debounce."""

    def __init__(
        self,
        backend: SnapshotBackend,
        collect: Callable[[], Snapshot],
        *,
        delay_ms: int = SNAPSHOT_DEBOUNCE_MS,
    ) -> None:
        self.backend = backend
        self.collect = collect
        self.delay_seconds = max(delay_ms, 0) / 1000
        self._task: asyncio.Task | None = None
        self.writes = 0

    def schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._task is not None and not self._task.done():
            return
        self._task = loop.create_task(self._delayed_write())

    async def _delayed_write(self) -> None:
        await asyncio.sleep(self.delay_seconds)
        self._task = None
        snapshot = self.collect()
        try:
            await asyncio.to_thread(self.backend.save_all, snapshot)
            self.writes += 1
        except Exception:
            logger.exception("Falha ao gravar snapshot das conversas")

    def flush(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        try:
            self.backend.save_all(self.collect())
            self.writes += 1
        except Exception:
            logger.exception("Falha ao gravar snapshot das conversas")

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()


def hydrate(backend: SnapshotBackend) -> Snapshot:
    try:
        return backend.load_all()
    except Exception:
        logger.exception("Falha ao carregar snapshot persistido; iniciando vazio")
        return {}
