"""File-based storage for execution logs.

Each run gets its own directory under ``runs/``. There is no shared index:
``list_runs()`` scans the directory and loads summary.json from each run,
so concurrent runs never contend on a common file.

Block logs use JSONL (one JSON object per line) and are appended as each
block finishes, so they survive a crash mid-run. The summary is written
once at the end because it aggregates the block logs.

Storage layout::

    {base_path}/
      runs/
        {run_id}/
          summary.json   # Level 1, written once at end
          blocks.jsonl   # Level 2, appended per block
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from blockflow.runtime.execution_log_schemas import RunSummaryLog
from blockflow.schemas.context import BlockLog
from blockflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class ExecutionLogStore:
    """Persists block logs and run summaries, one directory per run."""

    def __init__(self, base_path: Path) -> None:
        self._base_path = Path(base_path)
        self._runs_dir = self._base_path / "runs"

    def _get_run_dir(self, run_id: str) -> Path:
        return self._runs_dir / run_id

    # -------------------------------------------------------------------
    # Incremental write (sync, called from locked sections)
    # -------------------------------------------------------------------

    def ensure_run_dir(self, run_id: str) -> None:
        """Create the run directory immediately. Called by start_run()."""
        self._get_run_dir(run_id).mkdir(parents=True, exist_ok=True)

    def append_block_log(self, run_id: str, log: BlockLog) -> None:
        """Append one JSONL line to blocks.jsonl. Sync."""
        path = self._get_run_dir(run_id) / "blocks.jsonl"
        line = log.model_dump_json() + "\n"
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)

    def read_block_logs_sync(self, run_id: str) -> list[BlockLog]:
        """Read blocks.jsonl back into BlockLog models. Skips corrupt lines."""
        return _read_jsonl_as_models(self._get_run_dir(run_id) / "blocks.jsonl", BlockLog)

    # -------------------------------------------------------------------
    # Summary write (async, called from end_run)
    # -------------------------------------------------------------------

    async def save_summary(self, run_id: str, summary: RunSummaryLog) -> None:
        """Write summary.json atomically. Called once at end_run()."""
        run_dir = self._get_run_dir(run_id)
        content = summary.model_dump_json(indent=2)

        def _write() -> None:
            run_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(run_dir / "summary.json") as f:
                f.write(content)

        await asyncio.to_thread(_write)

    # -------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------

    async def load_summary(self, run_id: str) -> RunSummaryLog | None:
        """Load the summary for a specific run."""
        path = self._get_run_dir(run_id) / "summary.json"

        def _read() -> RunSummaryLog | None:
            if not path.exists():
                return None
            try:
                return RunSummaryLog.model_validate_json(path.read_text(encoding="utf-8"))
            except (ValueError, OSError) as e:
                logger.warning("Failed to read %s: %s", path, e)
                return None

        return await asyncio.to_thread(_read)

    async def load_block_logs(self, run_id: str) -> list[BlockLog]:
        """Load every block log recorded for a run."""
        return await asyncio.to_thread(self.read_block_logs_sync, run_id)

    async def list_runs(self, status: str = "", limit: int = 20) -> list[RunSummaryLog]:
        """Load summaries, filter by status, most recent first.

        Directories without summary.json are treated as in-progress runs and
        get a synthetic summary with status="in_progress".
        """
        run_ids = await asyncio.to_thread(self._scan_run_dirs)
        summaries: list[RunSummaryLog] = []

        for run_id in run_ids:
            summary = await self.load_summary(run_id)
            if summary is None:
                summary = RunSummaryLog(
                    run_id=run_id,
                    status="in_progress",
                    started_at=_infer_started_at(run_id),
                )
            if status and summary.status != status:
                continue
            summaries.append(summary)

        summaries.sort(key=lambda s: s.started_at, reverse=True)
        return summaries[:limit]

    def _scan_run_dirs(self) -> list[str]:
        if not self._runs_dir.exists():
            return []
        return [d.name for d in self._runs_dir.iterdir() if d.is_dir()]


# -------------------------------------------------------------------
# Module-level helpers
# -------------------------------------------------------------------


def _read_jsonl_as_models(path: Path, model_cls: type) -> list:
    """Parse a JSONL file into a list of Pydantic model instances.

    Skips blank lines and corrupt JSON lines (partial writes from crashes).
    """
    results: list = []
    if not path.exists():
        return results
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    results.append(model_cls(**json.loads(line)))
                except (json.JSONDecodeError, ValueError, TypeError) as e:
                    logger.warning("Skipping corrupt JSONL line in %s: %s", path, e)
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
    return results


def _infer_started_at(run_id: str) -> str:
    """Best-effort ISO timestamp from a run_id like '20250101T120000_abc12345'."""
    try:
        ts_part = run_id.split("_")[0]
        dt = datetime.strptime(ts_part, "%Y%m%dT%H%M%S").replace(tzinfo=UTC)
        return dt.isoformat()
    except (ValueError, IndexError):
        return ""
