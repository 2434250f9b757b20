"""
Job and Blob Stores - Redis or In-Memory.

Storage for:
- Job records (atomic per-job read-modify-write)
- Result artifacts (content-addressed blobs)

The orchestration core only sees the abstract interfaces; which backend
is used is a configuration choice (``JOB_STORE_BACKEND``).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from voicedesc.models.job import Job, utcnow

from .config import Settings, settings
from .exceptions import BlobNotFoundError, JobNotFoundError, StoreConflictError

logger = logging.getLogger(__name__)

JobMutator = Callable[[Job], None]

# =============================================================================
# ABSTRACT JOB STORE
# =============================================================================

class JobStore(ABC):
    """Key-addressable job store.

    ``update`` is the only way to change a stored job: the mutator runs
    against the latest committed record and the write is applied
    atomically. A mutator that raises aborts the update and nothing is
    written. Every committed update bumps ``version`` and refreshes
    ``updated_at``.
    """

    @abstractmethod
    async def create(self, job: Job) -> Job:
        """Insert a new job. Raises ValueError if the id is taken."""

    @abstractmethod
    async def get(self, job_id: str) -> Job:
        """Return a snapshot of the job. Raises JobNotFoundError."""

    @abstractmethod
    async def update(self, job_id: str, mutator: JobMutator) -> Job:
        """Atomically apply ``mutator`` and return the committed job."""

    @abstractmethod
    async def list_jobs(self) -> list[Job]:
        """Snapshots of all stored jobs."""

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Remove a job. Returns False if it did not exist."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

def _commit(job: Job) -> None:
    job.version += 1
    job.updated_at = utcnow()

# =============================================================================
# IN-MEMORY JOB STORE
# =============================================================================

class InMemoryJobStore(JobStore):
    """Process-local job store with per-key asyncio locks.

    Callers always receive deep copies, so nothing outside the store can
    mutate a committed record.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    async def create(self, job: Job) -> Job:
        if job.id in self._jobs:
            raise ValueError(f"Job {job.id} already exists")
        self._jobs[job.id] = job.clone()
        return job.clone()

    async def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.clone()

    async def update(self, job_id: str, mutator: JobMutator) -> Job:
        async with self._lock_for(job_id):
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            draft = current.clone()
            mutator(draft)
            _commit(draft)
            self._jobs[job_id] = draft
            return draft.clone()

    async def list_jobs(self) -> list[Job]:
        return [job.clone() for job in self._jobs.values()]

    async def delete(self, job_id: str) -> bool:
        removed = self._jobs.pop(job_id, None) is not None
        self._locks.pop(job_id, None)
        return removed

# =============================================================================
# REDIS JOB STORE
# =============================================================================

class RedisJobStore(JobStore):
    """Redis job store using WATCH/MULTI compare-and-swap.

    A transaction that loses the race is retried against the fresh record
    up to ``cas_retries`` times before StoreConflictError is raised.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        prefix: str | None = None,
        cas_retries: int | None = None,
        client: Any = None,
    ):
        self.url = url or settings.REDIS_URL
        self.prefix = prefix or settings.REDIS_KEY_PREFIX
        self.cas_retries = cas_retries or settings.JOB_STORE_CAS_RETRIES
        self._client = client
        self._lock = asyncio.Lock()

    async def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        async with self._lock:
            if self._client is None:
                self._client = aioredis.from_url(
                    self.url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                )
                logger.info(
                    "[RedisJobStore] Using Redis at %s", self.url.split("@")[-1]
                )
        return self._client

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    @staticmethod
    def _dumps(job: Job) -> str:
        return json.dumps(job.to_dict())

    @staticmethod
    def _loads(raw: str | bytes) -> Job:
        return Job.from_dict(json.loads(raw))

    async def create(self, job: Job) -> Job:
        client = await self._get_client()
        created = await client.set(self._key(job.id), self._dumps(job), nx=True)
        if not created:
            raise ValueError(f"Job {job.id} already exists")
        return job.clone()

    async def get(self, job_id: str) -> Job:
        client = await self._get_client()
        raw = await client.get(self._key(job_id))
        if raw is None:
            raise JobNotFoundError(job_id)
        return self._loads(raw)

    async def update(self, job_id: str, mutator: JobMutator) -> Job:
        client = await self._get_client()
        key = self._key(job_id)

        async with client.pipeline(transaction=True) as pipe:
            for attempt in range(1, self.cas_retries + 1):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise JobNotFoundError(job_id)
                    job = self._loads(raw)
                    mutator(job)
                    _commit(job)
                    pipe.multi()
                    pipe.set(key, self._dumps(job))
                    await pipe.execute()
                    return job
                except WatchError:
                    logger.debug(
                        "[RedisJobStore] CAS conflict on %s (attempt %d)", job_id, attempt
                    )
                    continue

        raise StoreConflictError(job_id, self.cas_retries)

    async def list_jobs(self) -> list[Job]:
        client = await self._get_client()
        jobs = []
        async for key in client.scan_iter(match=f"{self.prefix}*"):
            raw = await client.get(key)
            if raw is not None:
                jobs.append(self._loads(raw))
        return jobs

    async def delete(self, job_id: str) -> bool:
        client = await self._get_client()
        return bool(await client.delete(self._key(job_id)))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

# =============================================================================
# BLOB STORE
# =============================================================================

class BlobStore(ABC):
    """Content-addressable artifact store. References are opaque strings."""

    @abstractmethod
    async def put(self, data: bytes) -> str: ...

    @abstractmethod
    async def get(self, reference: str) -> bytes: ...

    @abstractmethod
    async def exists(self, reference: str) -> bool: ...

class InMemoryBlobStore(BlobStore):
    """sha256-addressed blobs held in memory. Identical bytes share a reference."""

    SCHEME = "blob://sha256/"

    def __init__(self):
        self._blobs: dict[str, bytes] = {}

    async def put(self, data: bytes) -> str:
        reference = self.SCHEME + hashlib.sha256(data).hexdigest()
        self._blobs[reference] = bytes(data)
        return reference

    async def get(self, reference: str) -> bytes:
        try:
            return self._blobs[reference]
        except KeyError:
            raise BlobNotFoundError(reference) from None

    async def exists(self, reference: str) -> bool:
        return reference in self._blobs

    def register(self, reference: str, data: bytes = b"") -> None:
        """Make an externally produced reference (e.g. synthesized audio) resolvable."""
        self._blobs[reference] = data

# =============================================================================
# FACTORY
# =============================================================================

def create_job_store(cfg: Settings | None = None) -> JobStore:
    cfg = cfg or settings
    if cfg.JOB_STORE_BACKEND == "redis":
        return RedisJobStore(
            cfg.REDIS_URL,
            prefix=cfg.REDIS_KEY_PREFIX,
            cas_retries=cfg.JOB_STORE_CAS_RETRIES,
        )
    return InMemoryJobStore()

__all__ = [
    "BlobStore",
    "InMemoryBlobStore",
    "InMemoryJobStore",
    "JobMutator",
    "JobStore",
    "RedisJobStore",
    "create_job_store",
]
