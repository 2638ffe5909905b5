import pytest

from fakes import FakeServerFarm


@pytest.fixture
def farm() -> FakeServerFarm:
    """Session factory with no servers configured yet."""
    return FakeServerFarm()
