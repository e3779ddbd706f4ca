from collections.abc import AsyncIterator

import pytest

from justflow.studio.api import InternalApi
from justflow.testing import FakeClock
from tests.factories import FakeService


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(clock: FakeClock) -> FakeService:
    return FakeService(clock=clock)


@pytest.fixture
async def api(service: FakeService) -> AsyncIterator[InternalApi]:
    client = service.api()
    yield client
    await client.aclose()
