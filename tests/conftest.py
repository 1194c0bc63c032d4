import pytest
import pytest_asyncio

from dca_engine.core.orders.models import Order
from dca_engine.db.repository import InMemoryOrderRepository

from fakes import NOW, FakeSigner, funded_reader, make_order


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def reader():
    return funded_reader()


@pytest_asyncio.fixture
async def stored_order(repository: InMemoryOrderRepository) -> Order:
    """A due order already saved in the repository."""
    order = make_order()
    await repository.create_order(order)
    return order
