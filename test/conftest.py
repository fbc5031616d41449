"""
测试公共夹具

每个测试使用独立的 SQLite 文件数据库；补全与嵌入服务用可编排的假实现替代，
所有调度器间隔为 0，时钟可手动推进。
"""

import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import pytest

from lorekeeper.core.pipeline_config import PipelineConfig
from lorekeeper.db.init_db import init_db
from lorekeeper.db.session import build_engine, build_session_factory
from lorekeeper.models import Chapter, NarrativeElement
from lorekeeper.services.analysis_service import AnalysisService
from lorekeeper.services.embedding_service import EmbeddingService
from lorekeeper.services.llm_service import LLMService
from lorekeeper.services.queue import RateLimitedScheduler

PROJECT_ID = "project-1"

_CATEGORY_LINE = re.compile(r"只抽取以下类别：(.+?)。")
_CHAPTER_LINE = re.compile(r"正文来源章节ID：(.+?)（")
_ENTITY_LINE = re.compile(r"实体名称：(.+)")


def prompt_kind(prompt: str) -> str:
    if "待合成的来源记录" in prompt:
        return "synthesis"
    if "合并决策" in prompt:
        return "merge"
    if "抽取结构化知识" in prompt:
        return "extraction"
    return "unknown"


async def _no_sleep(seconds: float) -> None:
    return None


class FakeClock:
    """可手动推进的 UTC 时钟"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCompletionClient:
    """
    记录全部提示词的假补全客户端

    responder 接收提示词，返回文本或异常实例（异常会被抛出）。
    """

    model_name = "fake-model"

    def __init__(self, responder: Optional[Callable[[str], Any]] = None):
        self.responder = responder or (lambda prompt: "{}")
        self.prompts: List[str] = []

    async def complete(self, prompt: str, *, temperature: float, max_tokens: Optional[int] = None) -> str:
        self.prompts.append(prompt)
        reply = self.responder(prompt)
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def calls_of(self, kind: str) -> int:
        return sum(1 for prompt in self.prompts if prompt_kind(prompt) == kind)


class NovelResponder:
    """
    按提示词中的章节ID与类别返回预先准备的抽取结果

    knowledge: {chapter_id: {"characters": [...], "timeline_events": [...], ...}}
    """

    def __init__(
        self,
        knowledge: Dict[str, Dict[str, List[Dict[str, Any]]]],
        *,
        merge_reply: Optional[Dict[str, Any]] = None,
        synthesis_reply: Optional[Callable[[str], Dict[str, Any]]] = None,
    ):
        self.knowledge = knowledge
        self.merge_reply = merge_reply or {"action": "keep_distinct", "reason": "不同", "confidence": 0.8}
        self.synthesis_reply = synthesis_reply
        self.failing_chapters: set = set()

    def __call__(self, prompt: str) -> Any:
        kind = prompt_kind(prompt)
        if kind == "merge":
            return json.dumps(self.merge_reply, ensure_ascii=False)
        if kind == "synthesis":
            name = _ENTITY_LINE.search(prompt).group(1).strip()
            reply = self.synthesis_reply(name) if self.synthesis_reply else {
                "description": f"{name}（综合）",
                "details": {},
                "reasoning": "合并了各章节描述",
                "conflicts_resolved": [],
            }
            return json.dumps(reply, ensure_ascii=False)

        keys = [key.strip() for key in _CATEGORY_LINE.search(prompt).group(1).split(",")]
        chapters = [cid.strip() for cid in _CHAPTER_LINE.search(prompt).group(1).split(",")]
        if self.failing_chapters.intersection(chapters):
            return RuntimeError("模拟的补全服务故障")

        payload: Dict[str, List[Dict[str, Any]]] = {key: [] for key in keys}
        for chapter_id in chapters:
            for key in keys:
                payload[key].extend(self.knowledge.get(chapter_id, {}).get(key, []))
        return json.dumps(payload, ensure_ascii=False)


def unit_vector(slot: int, dimension: int = 64) -> List[float]:
    vector = [0.0] * dimension
    vector[slot] = 1.0
    return vector


def blended_vector(slot: int, other_slot: int, similarity: float, dimension: int = 64) -> List[float]:
    """与 unit_vector(slot) 的余弦相似度恰为 similarity 的单位向量"""
    vector = [0.0] * dimension
    vector[slot] = similarity
    vector[other_slot] = (1 - similarity ** 2) ** 0.5
    return vector


class OneHotEmbeddingProvider:
    """
    确定性的嵌入提供方

    不同文本得到互相正交的向量，相同文本得到相同向量；
    overrides 中的关键字命中时返回指定向量（按插入顺序匹配）。
    """

    model_name = "one-hot"

    def __init__(self, dimension: int = 1024, overrides: Optional[Dict[str, Sequence[float]]] = None):
        self.dimension = dimension
        self.overrides = dict(overrides or {})
        self._slots: Dict[str, int] = {}
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        for keyword, vector in self.overrides.items():
            if keyword in text:
                return list(vector)
        slot = self._slots.setdefault(text, len(self._slots) % self.dimension)
        return unit_vector(slot, self.dimension)


def make_llm_service(client) -> LLMService:
    return LLMService(client, RateLimitedScheduler("completion", 0), max_retries=2, sleep=_no_sleep)


def make_embedding_service(provider=None) -> EmbeddingService:
    return EmbeddingService(provider, RateLimitedScheduler("embedding", 0), dimension=64, sleep=_no_sleep)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'lorekeeper-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_analysis_service(clock):
    """构造注入假服务的 AnalysisService"""

    def factory(session, client, provider=None, config: Optional[PipelineConfig] = None) -> AnalysisService:
        return AnalysisService(
            session,
            llm_service=make_llm_service(client),
            embedding_service=make_embedding_service(provider or OneHotEmbeddingProvider()),
            config=config or PipelineConfig(),
            clock=clock,
        )

    return factory


async def add_chapters(session, chapters: Iterable[Dict[str, Any]], project_id: str = PROJECT_ID) -> List[Chapter]:
    rows = [
        Chapter(
            id=data["id"],
            project_id=project_id,
            chapter_number=data["number"],
            title=data.get("title"),
            content=data["content"],
        )
        for data in chapters
    ]
    session.add_all(rows)
    await session.commit()
    return rows


async def add_element(session, project_id: str = PROJECT_ID, **values) -> NarrativeElement:
    values.setdefault("details", {})
    values.setdefault("source_chapter_ids", [])
    element = NarrativeElement(project_id=project_id, **values)
    session.add(element)
    await session.commit()
    return element
