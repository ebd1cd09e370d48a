"""共享 fixtures: 可控时钟、临时数据库上的 MemoryStore、Mock LLM"""

import pytest

from structmem.memory import MemoryExtractor, MemoryStore, MemorySummarizer
from structmem.memory.storage import DAY_MS
from tests.fixtures.mock_llm import MockCompleter

START_MS = 1_700_000_000_000


class FakeClock:
    """毫秒时钟，测试里手动推进"""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, days: float = 0, ms: int = 0) -> None:
        self.now += int(days * DAY_MS) + ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store(tmp_path, clock):
    memory_store = MemoryStore(tmp_path / "memory.db", clock=clock)
    await memory_store.connect()
    yield memory_store
    await memory_store.close()


@pytest.fixture
def mock_llm():
    return MockCompleter()


@pytest.fixture
def extractor(store):
    """未配置 LLM 的提取器"""
    return MemoryExtractor(store)


@pytest.fixture
def llm_extractor(store, mock_llm):
    return MemoryExtractor(store, mock_llm)


@pytest.fixture
def summarizer(store, extractor):
    return MemorySummarizer(store, extractor)


@pytest.fixture
def llm_summarizer(store, llm_extractor, mock_llm):
    return MemorySummarizer(store, llm_extractor, mock_llm)
