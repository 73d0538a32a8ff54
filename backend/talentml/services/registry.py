"""
Model Registry - Persistence for Models, A/B Tests and Outcomes

The trainer and the A/B framework keep their working state in memory and
mirror it to a registry through save/load/update calls. A registry failure
never loses the in-memory operation: callers go through persist_with_retry(),
which retries a bounded number of times and then logs.

Backends:
    - InMemoryRegistry: process-local dicts (default, tests)
    - RedisRegistry: redis.asyncio with JSON payloads

Redis key layout:
    model:{model_id}                  -> MLModel JSON
    abtest:{test_id}                  -> A/B test JSON
    participant:{test_id}:{user_id}   -> participant JSON
    conversions:{test_id}             -> list of conversion JSON
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis

from talentml.config import get_settings
from talentml.exceptions import ConfigurationError, RegistryError
from talentml.schemas.ml import MLModel

logger = logging.getLogger(__name__)


class ModelRegistry(ABC):
    """Persistence interface used by the trainer and the A/B framework."""

    # ---------- Models ----------

    @abstractmethod
    async def save_model(self, model: MLModel) -> None:
        ...

    @abstractmethod
    async def load_model(self, model_id: str) -> Optional[MLModel]:
        ...

    @abstractmethod
    async def list_models(self) -> List[MLModel]:
        ...

    async def update_model(self, model: MLModel) -> None:
        if await self.load_model(model.id) is None:
            raise RegistryError(f"Cannot update unknown model: {model.id}")
        await self.save_model(model)

    # ---------- A/B tests ----------

    @abstractmethod
    async def save_test(self, test: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def load_test(self, test_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_tests(self) -> List[Dict[str, Any]]:
        ...

    async def update_test(self, test: Dict[str, Any]) -> None:
        if await self.load_test(test["id"]) is None:
            raise RegistryError(f"Cannot update unknown test: {test['id']}")
        await self.save_test(test)

    # ---------- Participants and conversions ----------

    @abstractmethod
    async def save_participant(self, test_id: str, user_id: str, participant: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def load_participants(self, test_id: str) -> Dict[str, Dict[str, Any]]:
        ...

    @abstractmethod
    async def append_conversion(self, test_id: str, conversion: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def load_conversions(self, test_id: str) -> List[Dict[str, Any]]:
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryRegistry(ModelRegistry):
    """Dict-backed registry. Stored records are copies, never shared references."""

    def __init__(self):
        self.models: Dict[str, Dict[str, Any]] = {}
        self.tests: Dict[str, Dict[str, Any]] = {}
        self.participants: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.conversions: Dict[str, List[Dict[str, Any]]] = {}

    async def save_model(self, model: MLModel) -> None:
        self.models[model.id] = model.to_dict()

    async def load_model(self, model_id: str) -> Optional[MLModel]:
        data = self.models.get(model_id)
        return MLModel.from_dict(data) if data else None

    async def list_models(self) -> List[MLModel]:
        return [MLModel.from_dict(data) for data in self.models.values()]

    async def save_test(self, test: Dict[str, Any]) -> None:
        self.tests[test["id"]] = copy.deepcopy(test)

    async def load_test(self, test_id: str) -> Optional[Dict[str, Any]]:
        data = self.tests.get(test_id)
        return copy.deepcopy(data) if data else None

    async def list_tests(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(data) for data in self.tests.values()]

    async def save_participant(self, test_id: str, user_id: str, participant: Dict[str, Any]) -> None:
        self.participants.setdefault(test_id, {})[user_id] = dict(participant)

    async def load_participants(self, test_id: str) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self.participants.get(test_id, {}))

    async def append_conversion(self, test_id: str, conversion: Dict[str, Any]) -> None:
        self.conversions.setdefault(test_id, []).append(copy.deepcopy(conversion))

    async def load_conversions(self, test_id: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.conversions.get(test_id, []))


class RedisRegistry(ModelRegistry):
    """
    Redis-backed registry.

    Every operation raises RegistryError on connection or command failure;
    retrying and logging is left to persist_with_retry().

    Attributes:
        redis_url: Redis connection URL
        redis: Async Redis client (created on first use)
    """

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.redis: Optional[redis.Redis] = None

    async def _ensure_connected(self) -> redis.Redis:
        if self.redis is None:
            try:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True
                )
            except Exception as e:
                raise RegistryError(f"Failed to connect to Redis: {e}") from e
        return self.redis

    async def _set(self, key: str, payload: Any) -> None:
        try:
            client = await self._ensure_connected()
            await client.set(key, json.dumps(payload, default=str))
        except RegistryError:
            raise
        except Exception as e:
            raise RegistryError(f"Redis set error ({key}): {e}") from e

    async def _get(self, key: str) -> Optional[Any]:
        try:
            client = await self._ensure_connected()
            cached = await client.get(key)
        except RegistryError:
            raise
        except Exception as e:
            raise RegistryError(f"Redis get error ({key}): {e}") from e
        return json.loads(cached) if cached else None

    async def _scan(self, pattern: str) -> List[str]:
        try:
            client = await self._ensure_connected()
            return [key async for key in client.scan_iter(match=pattern)]
        except RegistryError:
            raise
        except Exception as e:
            raise RegistryError(f"Redis scan error ({pattern}): {e}") from e

    # ---------- Models ----------

    async def save_model(self, model: MLModel) -> None:
        await self._set(f"model:{model.id}", model.to_dict())

    async def load_model(self, model_id: str) -> Optional[MLModel]:
        data = await self._get(f"model:{model_id}")
        return MLModel.from_dict(data) if data else None

    async def list_models(self) -> List[MLModel]:
        models = []
        for key in await self._scan("model:*"):
            data = await self._get(key)
            if data:
                models.append(MLModel.from_dict(data))
        return models

    # ---------- A/B tests ----------

    async def save_test(self, test: Dict[str, Any]) -> None:
        await self._set(f"abtest:{test['id']}", test)

    async def load_test(self, test_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"abtest:{test_id}")

    async def list_tests(self) -> List[Dict[str, Any]]:
        tests = []
        for key in await self._scan("abtest:*"):
            data = await self._get(key)
            if data:
                tests.append(data)
        return tests

    # ---------- Participants and conversions ----------

    async def save_participant(self, test_id: str, user_id: str, participant: Dict[str, Any]) -> None:
        await self._set(f"participant:{test_id}:{user_id}", participant)

    async def load_participants(self, test_id: str) -> Dict[str, Dict[str, Any]]:
        prefix = f"participant:{test_id}:"
        participants = {}
        for key in await self._scan(f"{prefix}*"):
            data = await self._get(key)
            if data:
                participants[key[len(prefix):]] = data
        return participants

    async def append_conversion(self, test_id: str, conversion: Dict[str, Any]) -> None:
        key = f"conversions:{test_id}"
        try:
            client = await self._ensure_connected()
            await client.rpush(key, json.dumps(conversion, default=str))
        except RegistryError:
            raise
        except Exception as e:
            raise RegistryError(f"Redis rpush error ({key}): {e}") from e

    async def load_conversions(self, test_id: str) -> List[Dict[str, Any]]:
        key = f"conversions:{test_id}"
        try:
            client = await self._ensure_connected()
            items = await client.lrange(key, 0, -1)
        except RegistryError:
            raise
        except Exception as e:
            raise RegistryError(f"Redis lrange error ({key}): {e}") from e
        return [json.loads(item) for item in items]

    # ---------- Health ----------

    async def health_check(self) -> bool:
        try:
            client = await self._ensure_connected()
            await client.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis:
            await self.redis.close()
            self.redis = None


async def persist_with_retry(
    operation: Callable[[], Awaitable[Any]],
    description: str,
    attempts: Optional[int] = None,
    backoff_seconds: float = 0.05,
) -> bool:
    """
    Run a registry write, retrying on RegistryError.

    Returns:
        True if the write succeeded, False after the final failed attempt
        (the failure is logged; in-memory state is left as is)
    """
    attempts = attempts if attempts is not None else get_settings().registry_retry_attempts
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            await operation()
            return True
        except RegistryError as e:
            if attempt == attempts:
                logger.error(f"Registry write failed after {attempts} attempts ({description}): {e}")
                return False
            logger.warning(f"Registry write failed ({description}), attempt {attempt}/{attempts}: {e}")
            await asyncio.sleep(backoff_seconds * attempt)

    return False


# ==================== Factory Function ====================

_registry_instance: Optional[ModelRegistry] = None


def get_registry(backend: Optional[str] = None, redis_url: Optional[str] = None) -> ModelRegistry:
    """
    Get or create the registry singleton.

    Args:
        backend: "memory" or "redis" (uses settings if not provided)
        redis_url: Optional Redis URL (uses settings if not provided)

    Raises:
        ConfigurationError: If the backend name is unknown
    """
    global _registry_instance

    if _registry_instance is None:
        settings = get_settings()
        backend = (backend or settings.registry_backend).lower()

        if backend == "memory":
            _registry_instance = InMemoryRegistry()
        elif backend == "redis":
            _registry_instance = RedisRegistry(redis_url=redis_url or settings.redis_url)
        else:
            raise ConfigurationError(f"Unknown registry backend: {backend}. Supported: memory, redis")

        logger.info(f"Model registry backend: {backend}")

    return _registry_instance


def reset_registry() -> None:
    global _registry_instance
    _registry_instance = None
