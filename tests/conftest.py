import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

import models  # noqa: E402,F401
from database import _create_engine, create_schema, make_sessionmaker  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture
async def sessions(tmp_path):
    # a file database so concurrent sessions share one store
    engine = _create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_schema(engine)
    yield make_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
