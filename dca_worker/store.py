"""Persistence for scheduled jobs and purchase outcome records."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from .errors import StoreError
from .models import Job, PurchaseRecord

_DEFAULT_DIR = Path(os.environ.get("DCA_STATE_DIR", "storage/dca"))


class PurchaseStore:
    """Append-only store of purchase outcome records."""

    def append(self, record: PurchaseRecord) -> None:
        raise NotImplementedError

    def list_for(self, eth_address: str) -> List[PurchaseRecord]:
        raise NotImplementedError


class JobStore:
    """Abstract interface for scheduled job persistence backends."""

    def save(self, job: Job) -> None:
        raise NotImplementedError

    def load(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def delete(self, job_id: str) -> None:
        raise NotImplementedError

    def list_jobs(self) -> Iterable[Job]:
        raise NotImplementedError

    def due(self, now: float) -> List[Job]:
        jobs = [job for job in self.list_jobs() if job.is_due(now)]
        return sorted(jobs, key=lambda job: job.next_run_at)


class FilePurchaseStore(PurchaseStore):
    """Store purchase records as JSON lines in a single file."""

    def __init__(self, root: Path | None = None) -> None:
        self._root = (root or _DEFAULT_DIR).resolve()
        self._lock = threading.Lock()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "purchases.jsonl"

    def append(self, record: PurchaseRecord) -> None:
        line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False, sort_keys=True)
        try:
            with self._lock:
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
        except OSError as exc:
            raise StoreError(f"Failed to append purchase record: {exc}") from exc

    def list_for(self, eth_address: str) -> List[PurchaseRecord]:
        if not self._path.exists():
            return []
        target = eth_address.lower()
        records: List[PurchaseRecord] = []
        try:
            with self._lock, self._path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    if not line.strip():
                        continue
                    record = PurchaseRecord.model_validate(json.loads(line))
                    if record.eth_address.lower() == target:
                        records.append(record)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise StoreError(f"Failed to read purchase records: {exc}") from exc
        return records


class MemoryPurchaseStore(PurchaseStore):
    def __init__(self) -> None:
        self._records: List[PurchaseRecord] = []
        self._lock = threading.Lock()

    def append(self, record: PurchaseRecord) -> None:
        with self._lock:
            self._records.append(record)

    def list_for(self, eth_address: str) -> List[PurchaseRecord]:
        target = eth_address.lower()
        with self._lock:
            return [record for record in self._records if record.eth_address.lower() == target]


class FileJobStore(JobStore):
    """Store each job as one JSON document, replaced atomically on save."""

    def __init__(self, root: Path | None = None) -> None:
        self._root = ((root or _DEFAULT_DIR) / "jobs").resolve()
        self._lock = threading.Lock()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self._root / f"{job_id}.json"

    def save(self, job: Job) -> None:
        payload = job.model_dump(mode="json")
        try:
            with self._lock:
                tmp_path = self._path(job.id).with_suffix(".json.tmp")
                with tmp_path.open("w", encoding="utf-8") as handle:
                    json.dump(payload, handle, ensure_ascii=False, sort_keys=True)
                tmp_path.replace(self._path(job.id))
        except OSError as exc:
            raise StoreError(f"Failed to persist job {job.id}: {exc}") from exc

    def load(self, job_id: str) -> Optional[Job]:
        path = self._path(job_id)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            return Job.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise StoreError(f"Failed to load job {job_id}: {exc}") from exc

    def delete(self, job_id: str) -> None:
        path = self._path(job_id)
        with self._lock:
            if path.exists():
                path.unlink()

    def list_jobs(self) -> Iterable[Job]:
        if not self._root.exists():
            return []
        jobs = []
        for path in sorted(self._root.glob("*.json")):
            job = self.load(path.stem)
            if job is not None:
                jobs.append(job)
        return jobs


class MemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def save(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    def load(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def list_jobs(self) -> Iterable[Job]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]


_STORE_SINGLETON: Dict[str, object] = {}


def _backend() -> str:
    return os.environ.get("DCA_STATE_BACKEND", "file").lower()


def get_purchase_store(root: Path | None = None) -> PurchaseStore:
    """Return the configured purchase store.

    ``DCA_STATE_BACKEND`` accepts ``file`` (default) or ``memory``.
    """

    backend = _backend()
    key = f"purchases:{backend}:{root}"
    if key not in _STORE_SINGLETON:
        _STORE_SINGLETON[key] = MemoryPurchaseStore() if backend == "memory" else FilePurchaseStore(root)
    return _STORE_SINGLETON[key]  # type: ignore[return-value]


def get_job_store(root: Path | None = None) -> JobStore:
    """Return the configured job store, selected like :func:`get_purchase_store`."""

    backend = _backend()
    key = f"jobs:{backend}:{root}"
    if key not in _STORE_SINGLETON:
        _STORE_SINGLETON[key] = MemoryJobStore() if backend == "memory" else FileJobStore(root)
    return _STORE_SINGLETON[key]  # type: ignore[return-value]
