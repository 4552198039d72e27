"""
Pause Store - Durable key-value storage for paused executions.

Records are keyed by execution ID; saving a record for an execution that is
already stored replaces it.

Directory structure (FilePauseStore):
    paused/
        index.json              # PauseIndex manifest
        {execution_id}.json     # Individual PausedExecution records
"""

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from blockflow.schemas.pause import PausedExecution, PausedExecutionSummary, PauseIndex
from blockflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class PauseStore(Protocol):
    """Storage contract used by PauseResumeManager."""

    async def save(self, record: PausedExecution) -> None: ...

    async def load(self, execution_id: str) -> PausedExecution | None: ...

    async def delete(self, execution_id: str) -> bool: ...

    async def list_all(self, workflow_id: str | None = None) -> list[PausedExecutionSummary]: ...


class FilePauseStore:
    """
    Stores paused executions as JSON files with atomic writes.

    Example:
        store = FilePauseStore(Path("~/.blockflow/storage").expanduser())
        await store.save(record)
        record = await store.load("exec_123")
    """

    def __init__(self, base_path: Path):
        """
        Initialize pause store.

        Args:
            base_path: Storage root (records go under ``paused/``)
        """
        self.base_path = Path(base_path)
        self.paused_dir = self.base_path / "paused"
        self.index_path = self.paused_dir / "index.json"
        self._index_lock = asyncio.Lock()

    def _record_path(self, execution_id: str) -> Path:
        return self.paused_dir / f"{execution_id}.json"

    async def save(self, record: PausedExecution) -> None:
        """
        Atomically save a record and update the index.

        Raises:
            OSError: If file write fails
        """

        def _write() -> None:
            self.paused_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(self._record_path(record.execution_id)) as f:
                f.write(record.model_dump_json(indent=2))
            logger.debug(f"Saved paused execution {record.execution_id}")

        await asyncio.to_thread(_write)

        async with self._index_lock:
            index = await self.load_index() or PauseIndex()
            index.upsert(record)
            await self._write_index(index)

    async def load(self, execution_id: str) -> PausedExecution | None:
        """Load a record, or None if it does not exist or is unreadable."""

        def _read() -> PausedExecution | None:
            path = self._record_path(execution_id)
            if not path.exists():
                return None
            try:
                return PausedExecution.model_validate_json(path.read_text(encoding="utf-8"))
            except (ValueError, OSError) as e:
                logger.error(f"Failed to load paused execution {execution_id}: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def delete(self, execution_id: str) -> bool:
        """Delete a record. Returns True if it existed."""

        def _delete() -> bool:
            path = self._record_path(execution_id)
            if not path.exists():
                return False
            path.unlink()
            logger.info(f"Deleted paused execution {execution_id}")
            return True

        deleted = await asyncio.to_thread(_delete)
        if deleted:
            async with self._index_lock:
                index = await self.load_index()
                if index and index.remove(execution_id):
                    await self._write_index(index)
        return deleted

    async def list_all(self, workflow_id: str | None = None) -> list[PausedExecutionSummary]:
        """List paused executions, optionally for one workflow."""
        index = await self.load_index()
        if not index:
            return []
        if workflow_id:
            return index.filter_by_workflow(workflow_id)
        return list(index.executions)

    async def load_index(self) -> PauseIndex | None:
        def _read() -> PauseIndex | None:
            if not self.index_path.exists():
                return None
            try:
                return PauseIndex.model_validate_json(self.index_path.read_text(encoding="utf-8"))
            except (ValueError, OSError) as e:
                logger.error(f"Failed to load pause index: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def _write_index(self, index: PauseIndex) -> None:
        """Should be called with _index_lock held."""

        def _write() -> None:
            self.paused_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(self.index_path) as f:
                f.write(index.model_dump_json(indent=2))

        await asyncio.to_thread(_write)


class InMemoryPauseStore:
    """Process-local store for tests and embedded use."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def save(self, record: PausedExecution) -> None:
        # Stored as JSON so loads never alias the caller's objects
        self._records[record.execution_id] = record.model_dump_json()

    async def load(self, execution_id: str) -> PausedExecution | None:
        data = self._records.get(execution_id)
        return PausedExecution.model_validate_json(data) if data is not None else None

    async def delete(self, execution_id: str) -> bool:
        return self._records.pop(execution_id, None) is not None

    async def list_all(self, workflow_id: str | None = None) -> list[PausedExecutionSummary]:
        summaries = [
            PausedExecutionSummary.from_record(PausedExecution.model_validate_json(data))
            for data in self._records.values()
        ]
        if workflow_id:
            summaries = [s for s in summaries if s.workflow_id == workflow_id]
        return summaries
