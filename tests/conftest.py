import io
from typing import List, Optional

import pytest
from PIL import Image, ImageDraw

from pixelqueue.core.database import create_db_and_tables, create_engine_and_sessionmaker
from pixelqueue.core.storage import LocalStorage
from pixelqueue.modules.jobs.store import InMemoryJobStore, SqlJobStore
from pixelqueue.modules.ledger.ledger import InMemoryCreditLedger, SqlCreditLedger
from pixelqueue.pipeline.generation import GenerativeProvider, SimulatedProvider
from pixelqueue.queue.broker import InMemoryBroker

ACCOUNT_ID = "acct-1"


def make_image_bytes(size=(400, 400), color=(200, 60, 60), fmt="PNG") -> bytes:
    """Solid background with a contrasting square in the middle."""
    image = Image.new("RGB", size, (240, 240, 240))
    draw = ImageDraw.Draw(image)
    w, h = size
    draw.rectangle([w // 4, h // 4, 3 * w // 4, 3 * h // 4], fill=color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def segment_center(image: Image.Image) -> Image.Image:
    """Segmenter stand-in: the middle half of the frame is the subject."""
    w, h = image.size
    mask = Image.new("L", image.size, 0)
    ImageDraw.Draw(mask).rectangle([w // 4, h // 4, 3 * w // 4, 3 * h // 4], fill=255)
    return mask


class FlakyProvider(GenerativeProvider):
    """Raises the queued errors in order, then renders like the simulated provider."""

    def __init__(self, errors: Optional[List[Exception]] = None):
        self.errors = list(errors or [])
        self.calls = 0
        self._inner = SimulatedProvider()

    async def transform(self, cutout, profile, timeout_ms=None):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return await self._inner.transform(cutout, profile, timeout_ms)


@pytest.fixture
def ledger():
    return InMemoryCreditLedger({ACCOUNT_ID: 5})


@pytest.fixture
def store(ledger):
    return InMemoryJobStore(ledger)


@pytest.fixture
def broker():
    return InMemoryBroker(backoff=lambda attempt: 0.0, max_attempts=3)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "storage"))


@pytest.fixture
async def sql_session_maker(tmp_path):
    engine, session_maker = create_engine_and_sessionmaker(f"sqlite+aiosqlite:///{tmp_path}/pixelqueue.db")
    await create_db_and_tables(engine)
    yield session_maker
    await engine.dispose()


@pytest.fixture
async def sql_ledger(sql_session_maker):
    ledger = SqlCreditLedger(sql_session_maker)
    await ledger.grant(ACCOUNT_ID, 5)
    return ledger


@pytest.fixture
def sql_store(sql_session_maker, sql_ledger):
    return SqlJobStore(sql_session_maker, sql_ledger)


@pytest.fixture
def make_image():
    return make_image_bytes


@pytest.fixture
def segmenter():
    return segment_center


@pytest.fixture
def flaky_provider():
    return FlakyProvider
