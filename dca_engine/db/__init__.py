"""Order storage: repository interface plus in-memory and Redis backends."""

from typing import Optional

from ..config import settings
from .repository import InMemoryOrderRepository, OrderRepository

_repository: Optional[OrderRepository] = None


def get_repository() -> OrderRepository:
    """Get the singleton repository (Redis when REDIS_URL is set)."""
    global _repository
    if _repository is None:
        if settings.has_redis:
            from .redis_repository import RedisOrderRepository

            _repository = RedisOrderRepository(settings.redis_url)
        else:
            _repository = InMemoryOrderRepository()
    return _repository


def set_repository(repository: Optional[OrderRepository]) -> None:
    """Swap the singleton (used by tests and embedding applications)."""
    global _repository
    _repository = repository


__all__ = [
    "OrderRepository",
    "InMemoryOrderRepository",
    "get_repository",
    "set_repository",
]
