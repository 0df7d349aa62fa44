"""
Checkpoint persistence for in-flight job runs.

A checkpoint records which connections of a run have completed or failed so
an interrupted run can resume without re-querying completed connections.
Every update fully overwrites the stored document; the file store writes to a
temp file and atomically replaces the previous version, so a crash mid-write
leaves the last valid checkpoint in place.
"""

import asyncio
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union
import logging

from pydantic import ValidationError

from core.exceptions import CheckpointError
from models.base import CheckpointOutcome
from models.checkpoint import JobCheckpoint

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class CheckpointStore(ABC):
    """
    Abstract checkpoint store.

    Responsibilities:
    - Durable load/save/clear of one checkpoint per job
    - Run bookkeeping shared by every backend (begin, record, end)

    The store is injected into the executor; each backend only implements
    the raw persistence methods.
    """

    def __init__(self):
        self._active: Dict[str, JobCheckpoint] = {}
        # Streamed flushes record outcomes from the buffer timer task too
        self._record_lock = asyncio.Lock()

    @abstractmethod
    async def load(self, job_id: str) -> Optional[JobCheckpoint]:
        """Return the stored checkpoint for a job, or None"""
        pass

    @abstractmethod
    async def save(self, checkpoint: JobCheckpoint) -> None:
        """Overwrite the stored checkpoint for ``checkpoint.job_id``"""
        pass

    @abstractmethod
    async def clear(self, job_id: str) -> bool:
        """Delete the stored checkpoint. Returns True if one existed."""
        pass

    @abstractmethod
    async def list_checkpoints(self) -> List[JobCheckpoint]:
        pass

    async def begin_run(
        self,
        job_id: str,
        job_name: str,
        connection_ids: Iterable[str],
        resume: bool
    ) -> JobCheckpoint:
        """
        Prepare the checkpoint a run will update.

        With ``resume`` the stored checkpoint is loaded and restricted to the
        job's current connections (ids no longer in the job are ignored).
        Without it the run starts empty; nothing is written until the first
        connection outcome is recorded, which supersedes any stale file.
        """
        connection_ids = list(connection_ids)
        checkpoint = None

        if resume:
            stored = await self.load(job_id)
            if stored is not None:
                checkpoint = stored.restricted_to(connection_ids)
                checkpoint.job_name = job_name
                logger.info(
                    f"Resuming job {job_id} from checkpoint: "
                    f"{len(checkpoint.completed_connection_ids)} completed, "
                    f"{len(checkpoint.failed_connection_ids)} failed"
                )

        if checkpoint is None:
            checkpoint = JobCheckpoint(
                job_id=job_id,
                job_name=job_name,
                total_connections=len(connection_ids)
            )

        self._active[job_id] = checkpoint
        return checkpoint

    async def record_connection_result(
        self,
        job_id: str,
        connection_id: str,
        outcome: CheckpointOutcome
    ) -> JobCheckpoint:
        """Upsert one connection outcome and persist the whole checkpoint"""
        async with self._record_lock:
            checkpoint = self._active.get(job_id)
            if checkpoint is None:
                checkpoint = await self.load(job_id) or JobCheckpoint(job_id=job_id)
                self._active[job_id] = checkpoint

            checkpoint.record(connection_id, outcome)
            await self.save(checkpoint)
            return checkpoint

    def current(self, job_id: str) -> Optional[JobCheckpoint]:
        """Checkpoint of the active run, if any"""
        return self._active.get(job_id)

    def forget(self, job_id: str) -> None:
        """Drop the active run state, keeping whatever was persisted"""
        self._active.pop(job_id, None)

    async def end_run(self, job_id: str, clear: bool) -> None:
        """Forget the active run; delete the stored checkpoint when ``clear``"""
        self.forget(job_id)
        if clear:
            await self.clear(job_id)


class FileCheckpointStore(CheckpointStore):
    """
    One ``<job_id>.json`` document per job under ``directory``.

    Disk I/O runs in a worker thread so the event loop keeps serving other
    jobs while a checkpoint is fsynced.
    """

    def __init__(self, directory: Union[str, Path]):
        super().__init__()
        self.directory = Path(directory)

    def path_for(self, job_id: str) -> Path:
        return self.directory / f"{_UNSAFE_FILENAME_CHARS.sub('_', job_id)}.json"

    def _read(self, path: Path) -> Optional[JobCheckpoint]:
        if not path.exists():
            return None
        try:
            return JobCheckpoint.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(
                f"Ignoring unreadable checkpoint {path}: {e}",
                extra={"error_context": {"path": str(path), "error_type": type(e).__name__}}
            )
            return None

    def _write(self, checkpoint: JobCheckpoint) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(checkpoint.job_id)

        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{target.stem}.", suffix=".tmp", dir=str(self.directory)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(checkpoint.to_json())
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _delete(self, job_id: str) -> bool:
        path = self.path_for(job_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    async def load(self, job_id: str) -> Optional[JobCheckpoint]:
        return await asyncio.to_thread(self._read, self.path_for(job_id))

    async def save(self, checkpoint: JobCheckpoint) -> None:
        try:
            await asyncio.to_thread(self._write, checkpoint)
        except OSError as e:
            raise CheckpointError(
                f"Failed to write checkpoint for job {checkpoint.job_id}",
                context={
                    "job_id": checkpoint.job_id,
                    "operation": "save",
                    "path": str(self.path_for(checkpoint.job_id))
                },
                original_exception=e
            )
        logger.debug(f"Checkpoint saved for job {checkpoint.job_id}")

    async def clear(self, job_id: str) -> bool:
        try:
            removed = await asyncio.to_thread(self._delete, job_id)
        except OSError as e:
            raise CheckpointError(
                f"Failed to delete checkpoint for job {job_id}",
                context={"job_id": job_id, "operation": "clear"},
                original_exception=e
            )
        if removed:
            logger.info(f"Checkpoint cleared for job {job_id}")
        return removed

    async def list_checkpoints(self) -> List[JobCheckpoint]:
        if not self.directory.exists():
            return []
        paths = sorted(self.directory.glob("*.json"))
        checkpoints = []
        for path in paths:
            checkpoint = await asyncio.to_thread(self._read, path)
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints


class InMemoryCheckpointStore(CheckpointStore):
    """Checkpoint store kept in a dict (tests, ephemeral runs)"""

    def __init__(self):
        super().__init__()
        self._documents: Dict[str, str] = {}
        self.save_count = 0

    async def load(self, job_id: str) -> Optional[JobCheckpoint]:
        document = self._documents.get(job_id)
        if document is None:
            return None
        return JobCheckpoint.model_validate_json(document)

    async def save(self, checkpoint: JobCheckpoint) -> None:
        # Stored serialised so later mutations of the live object are not visible
        self._documents[checkpoint.job_id] = checkpoint.to_json()
        self.save_count += 1

    async def clear(self, job_id: str) -> bool:
        return self._documents.pop(job_id, None) is not None

    async def list_checkpoints(self) -> List[JobCheckpoint]:
        return [JobCheckpoint.model_validate_json(d) for d in self._documents.values()]
