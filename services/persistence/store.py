"""Decision and audit persistence.

Decisions are versioned per job: reprocessing writes version N+1 and never
overwrites an earlier version. The audit log is append-only.

Redis implementation based on redis-py asyncio:
https://redis.readthedocs.io/en/stable/examples/asyncio_examples.html
"""

import logging
from abc import ABC, abstractmethod

from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.shared.config import Settings
from services.shared.schema import AuditEntry, Decision

logger = logging.getLogger(__name__)


class DecisionStore(ABC):
    """Interface for decision persistence backends."""

    @abstractmethod
    async def save_decision(self, decision: Decision) -> None:
        """Persist a decision under its job id and version.

        Raises:
            ValueError: If that version already exists
        """

    @abstractmethod
    async def load_decision(self, job_id: str, version: int | None = None) -> Decision | None:
        """Return the given version, or the latest one when ``version`` is None."""

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None:
        """Append one audit entry for a job."""

    @abstractmethod
    async def load_audit(self, job_id: str) -> list[AuditEntry]:
        """Return the job's audit entries in append order."""

    async def aclose(self) -> None:
        """Release backend resources."""
        return None


class InMemoryDecisionStore(DecisionStore):
    """Process-local store. Default backend and used in tests."""

    def __init__(self) -> None:
        self._decisions: dict[str, dict[int, Decision]] = {}
        self._audit: dict[str, list[AuditEntry]] = {}

    async def save_decision(self, decision: Decision) -> None:
        versions = self._decisions.setdefault(decision.job_id, {})
        if decision.version in versions:
            raise ValueError(
                f"Decision {decision.job_id} version {decision.version} already exists"
            )
        versions[decision.version] = decision

    async def load_decision(self, job_id: str, version: int | None = None) -> Decision | None:
        versions = self._decisions.get(job_id)
        if not versions:
            return None
        if version is None:
            version = max(versions)
        return versions.get(version)

    async def append_audit(self, entry: AuditEntry) -> None:
        self._audit.setdefault(entry.job_id, []).append(entry)

    async def load_audit(self, job_id: str) -> list[AuditEntry]:
        return list(self._audit.get(job_id, []))


_redis_retry = retry(
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    wait=wait_exponential_jitter(initial=0.2, max=5),
    stop=stop_after_attempt(3),
    reraise=True,
)


class RedisDecisionStore(DecisionStore):
    """Redis-backed store.

    Keys:
        ``{prefix}:{job_id}:v{version}``  decision JSON
        ``{prefix}:{job_id}:latest``      latest version number
        ``{prefix}:{job_id}:audit``       list of audit entry JSON
    """

    def __init__(self, settings: Settings, client: aioredis.Redis | None = None) -> None:
        self.prefix = settings.decision_key_prefix
        self._client = client or aioredis.Redis.from_url(settings.redis_url)

    def _key(self, job_id: str, suffix: str) -> str:
        return f"{self.prefix}:{job_id}:{suffix}"

    async def save_decision(self, decision: Decision) -> None:
        key = self._key(decision.job_id, f"v{decision.version}")
        if not await self._write_version(key, decision.model_dump_json()):
            raise ValueError(
                f"Decision {decision.job_id} version {decision.version} already exists"
            )
        await self._point_latest(decision.job_id, decision.version)
        logger.debug(f"Saved decision {decision.job_id} v{decision.version}")

    @_redis_retry
    async def _write_version(self, key: str, payload: str) -> bool:
        """SET NX the version key.

        A retried write whose first attempt landed finds its own payload and
        counts as written.
        """
        if await self._client.set(key, payload, nx=True):
            return True
        existing = await self._client.get(key)
        if isinstance(existing, bytes):
            existing = existing.decode()
        return existing == payload

    @_redis_retry
    async def _point_latest(self, job_id: str, version: int) -> None:
        await self._client.set(self._key(job_id, "latest"), version)

    async def load_decision(self, job_id: str, version: int | None = None) -> Decision | None:
        if version is None:
            latest = await self._client.get(self._key(job_id, "latest"))
            if latest is None:
                return None
            version = int(latest)
        raw = await self._client.get(self._key(job_id, f"v{version}"))
        if raw is None:
            return None
        return Decision.model_validate_json(raw)

    @_redis_retry
    async def append_audit(self, entry: AuditEntry) -> None:
        await self._client.rpush(self._key(entry.job_id, "audit"), entry.model_dump_json())

    async def load_audit(self, job_id: str) -> list[AuditEntry]:
        raw_entries = await self._client.lrange(self._key(job_id, "audit"), 0, -1)
        return [AuditEntry.model_validate_json(raw) for raw in raw_entries]

    async def aclose(self) -> None:
        await self._client.aclose()


def create_decision_store(settings: Settings) -> DecisionStore:
    """Instantiate the backend named by ``settings.persistence_backend``."""
    if settings.persistence_backend == "redis":
        logger.info(f"Using Redis decision store at {settings.redis_url}")
        return RedisDecisionStore(settings)
    logger.info("Using in-memory decision store")
    return InMemoryDecisionStore()
