"""
相似度引擎与限速调度器测试
"""

import pytest

from lorekeeper.core.constants import RecommendedAction
from lorekeeper.models import KnowledgeChangeLog, SemanticChunk
from lorekeeper.repositories import KnowledgeChangeLogRepository
from lorekeeper.services.chunking import NarrativeChunker
from lorekeeper.services.embedding_service import SIMULATED_MODEL_NAME, pseudo_embedding
from lorekeeper.services.queue import RateLimitedScheduler
from lorekeeper.services.similarity_engine import SimilarChunk, SimilarityEngine
from lorekeeper.utils.vector_utils import cosine_similarity

from conftest import (
    PROJECT_ID,
    OneHotEmbeddingProvider,
    add_element,
    blended_vector,
    make_embedding_service,
    unit_vector,
)


class FakeMonotonic:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _chunk_row(chapter_id, index, vector, content="text", *, simulated=False, content_hash=None):
    return SemanticChunk(
        chapter_id=chapter_id,
        project_id=PROJECT_ID,
        chunk_index=index,
        start_position=0,
        end_position=len(content),
        content=content,
        content_hash=content_hash or f"{chapter_id}-{index}",
        embedding=list(vector),
        embedding_model=SIMULATED_MODEL_NAME if simulated else "one-hot",
        embedding_simulated=simulated,
    )


class TestRateLimitedScheduler:
    """限速调度器测试"""

    async def test_enforces_min_interval(self):
        clock = FakeMonotonic()
        scheduler = RateLimitedScheduler("test", 2.0, clock=clock, sleep=clock.sleep)

        async def work(value):
            return value * 2

        assert await scheduler.run(work, 1) == 2
        assert await scheduler.run(work, 2) == 4
        assert clock.sleeps == [2.0]

        clock.now += 5
        await scheduler.run(work, 3)
        assert clock.sleeps == [2.0]

        status = scheduler.get_status()
        assert status["total_processed"] == 3
        assert status["active"] == 0
        assert status["waiting"] == 0
        assert status["total_delay"] == 2.0

    async def test_slot_released_on_error(self):
        scheduler = RateLimitedScheduler("test", 0)

        async def boom():
            raise ValueError("失败")

        with pytest.raises(ValueError):
            await scheduler.run(boom)
        assert scheduler.get_status()["active"] == 0
        assert scheduler.get_status()["total_processed"] == 1

    def test_rejects_invalid_arguments(self):
        with pytest.raises(ValueError):
            RateLimitedScheduler("test", -1)
        with pytest.raises(ValueError):
            RateLimitedScheduler("test", 0, max_concurrent=0)


class TestVectors:
    """向量工具测试"""

    def test_cosine_similarity(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([0, 0], [1, 0]) == 0.0

    def test_pseudo_embedding_is_deterministic_and_normalized(self):
        first = pseudo_embedding("Aria", 32)
        assert first == pseudo_embedding("Aria", 32)
        assert len(first) == 32
        assert sum(value * value for value in first) == pytest.approx(1.0)

    def test_pseudo_embeddings_of_unrelated_text_are_nearly_orthogonal(self):
        """不同文本的模拟向量近似正交，不会被误判为相似内容"""
        first = pseudo_embedding("Aria walked into the burning city at dawn.", 768)
        second = pseudo_embedding("The council debated the harvest tax for hours.", 768)
        assert abs(cosine_similarity(first, second)) < 0.3

    async def test_embedding_service_without_provider_is_simulated(self):
        result = await make_embedding_service(None).embed("Aria")
        assert result.simulated is True
        assert result.model == SIMULATED_MODEL_NAME
        assert len(result.vector) == 64


class TestSimilarityEngine:
    """相似度引擎测试"""

    async def test_find_similar_orders_and_filters(self, session):
        session.add_all([
            _chunk_row("ch-1", 0, unit_vector(0)),
            _chunk_row("ch-2", 0, blended_vector(0, 1, 0.8)),
            _chunk_row("ch-3", 0, unit_vector(2)),
            _chunk_row("ch-4", 0, [1.0, 0.0]),
        ])
        await session.commit()
        engine = SimilarityEngine(session, make_embedding_service())

        matches = await engine.find_similar(PROJECT_ID, unit_vector(0))
        assert [m.chapter_id for m in matches] == ["ch-1", "ch-2"]
        assert matches[0].similarity == pytest.approx(1.0)
        assert matches[1].similarity == pytest.approx(0.8)

        excluded = await engine.find_similar(PROJECT_ID, unit_vector(0), exclude_chapter_id="ch-1")
        assert [m.chapter_id for m in excluded] == ["ch-2"]
        assert await engine.find_similar(PROJECT_ID, unit_vector(0), k=1) == matches[:1]

    @pytest.mark.parametrize(
        "similarity, action",
        [
            (0.95, RecommendedAction.SKIP_AND_LINK),
            (0.85, RecommendedAction.PROCEED_WITH_ENHANCED_DEDUP),
            (0.75, RecommendedAction.PROCEED_NORMAL),
        ],
    )
    async def test_assess_chapter_tiers(self, session, similarity, action):
        session.add(_chunk_row("ch-1", 0, unit_vector(0)))
        await session.commit()
        engine = SimilarityEngine(session, make_embedding_service())

        assessment = await engine.assess_chapter(
            PROJECT_ID, "ch-2", [_chunk_row("ch-2", 0, blended_vector(0, 1, similarity))],
        )
        assert assessment.recommended_action == action
        assert assessment.similarity_score == pytest.approx(similarity)
        assert assessment.should_skip_extraction is (action == RecommendedAction.SKIP_AND_LINK)
        assert assessment.force_semantic_dedup is (action == RecommendedAction.PROCEED_WITH_ENHANCED_DEDUP)

    @pytest.mark.parametrize("query_simulated, stored_simulated", [(True, False), (False, True), (True, True)])
    async def test_simulated_matches_do_not_drive_skip(self, session, query_simulated, stored_simulated):
        """任一端为模拟向量且内容不同时，高相似度不触发跳过或强化去重"""
        session.add(_chunk_row("ch-1", 0, unit_vector(0), simulated=stored_simulated))
        await session.commit()
        engine = SimilarityEngine(session, make_embedding_service())

        query = _chunk_row("ch-2", 0, blended_vector(0, 1, 0.95), simulated=query_simulated)
        assessment = await engine.assess_chapter(PROJECT_ID, "ch-2", [query])
        assert assessment.recommended_action == RecommendedAction.PROCEED_NORMAL
        assert assessment.should_skip_extraction is False
        assert assessment.force_semantic_dedup is False
        assert assessment.similar_chunks == []

    async def test_simulated_match_with_identical_content_still_links(self, session):
        """内容哈希相同的模拟向量匹配仍视为重复章节"""
        session.add(_chunk_row("ch-1", 0, unit_vector(0), simulated=True, content_hash="same"))
        await session.commit()
        engine = SimilarityEngine(session, make_embedding_service())

        query = _chunk_row("ch-2", 0, unit_vector(0), simulated=True, content_hash="same")
        assessment = await engine.assess_chapter(PROJECT_ID, "ch-2", [query])
        assert assessment.recommended_action == RecommendedAction.SKIP_AND_LINK
        assert [m.chapter_id for m in assessment.similar_chunks] == ["ch-1"]
        assert assessment.similar_chunks[0].simulated is True

    async def test_assess_without_existing_chunks(self, session):
        engine = SimilarityEngine(session, make_embedding_service())
        assessment = await engine.assess_chapter(PROJECT_ID, "ch-1", [_chunk_row("ch-1", 0, unit_vector(0))])
        assert assessment.recommended_action == RecommendedAction.PROCEED_NORMAL
        assert assessment.similarity_score == 0.0
        assert assessment.similar_chunks == []

    async def test_embed_chunks_reuses_unchanged_vectors(self, session):
        provider = OneHotEmbeddingProvider()
        engine = SimilarityEngine(session, make_embedding_service(provider))
        chunks = NarrativeChunker().chunk_sync("Aria walked into the city. She looked around.")

        rows = await engine.embed_chunks(PROJECT_ID, "ch-1", chunks)
        await engine.save_chunks("ch-1", rows)
        await session.commit()
        assert provider.calls == 1
        assert rows[0].embedding_simulated is False

        again = await engine.embed_chunks(PROJECT_ID, "ch-1", chunks, previous_chunks=rows)
        assert provider.calls == 1
        assert again[0].embedding == rows[0].embedding

    async def test_link_and_boost(self, session):
        plain = await add_element(
            session, category="character", name="Aria", confidence_score=0.6, source_chapter_ids=["ch-1"],
        )
        edited = await add_element(
            session, category="theme", name="Hope", confidence_score=0.6,
            source_chapter_ids=["ch-1"], user_edited=True,
        )
        unrelated = await add_element(
            session, category="character", name="Marcus", confidence_score=0.6, source_chapter_ids=["ch-9"],
        )
        engine = SimilarityEngine(session, make_embedding_service())
        matches = [SimilarChunk(chunk_id=1, chapter_id="ch-1", chunk_index=0, similarity=0.97)]

        assert await engine.link_and_boost(PROJECT_ID, "ch-2", matches) == 2
        await session.commit()

        assert plain.source_chapter_ids == ["ch-1", "ch-2"]
        assert plain.confidence_score == pytest.approx(0.7)
        assert edited.source_chapter_ids == ["ch-1", "ch-2"]
        assert edited.confidence_score == pytest.approx(0.6)
        assert unrelated.source_chapter_ids == ["ch-9"]

        # 重复关联不再提升
        assert await engine.link_and_boost(PROJECT_ID, "ch-2", matches) == 0
        assert plain.confidence_score == pytest.approx(0.7)

        logs = await KnowledgeChangeLogRepository(session).list_for_project(PROJECT_ID)
        assert all(isinstance(log, KnowledgeChangeLog) for log in logs)
        assert sorted(log.change_type for log in logs) == ["linked", "linked"]

    async def test_link_ignores_matches_below_skip_threshold(self, session):
        await add_element(session, category="character", name="Aria", source_chapter_ids=["ch-1"])
        engine = SimilarityEngine(session, make_embedding_service())
        matches = [SimilarChunk(chunk_id=1, chapter_id="ch-1", chunk_index=0, similarity=0.85)]
        assert await engine.link_and_boost(PROJECT_ID, "ch-2", matches) == 0
