"""
知识合成测试
"""

import json

import pytest

from lorekeeper.exceptions import InvalidParameterError, ResourceNotFoundError
from lorekeeper.services.synthesis_service import SynthesisService

from conftest import PROJECT_ID, FakeCompletionClient, NovelResponder, add_element, make_llm_service


async def _add_aria_records(session):
    first = await add_element(
        session, category="character", name="Aria", description="A young mage",
        confidence_score=0.6, source_chapter_ids=["ch-1"], details={"role": "protagonist"},
    )
    second = await add_element(
        session, category="character", name="Aria", description="Aria has mastered fire magic",
        confidence_score=0.85, source_chapter_ids=["ch-2"], is_flagged=True,
    )
    return first, second


class TestSynthesisService:
    """SynthesisService 测试"""

    async def test_two_records_become_one_entity(self, session):
        first, second = await _add_aria_records(session)
        client = FakeCompletionClient(NovelResponder({}))
        service = SynthesisService(session, make_llm_service(client))

        entity = await service.synthesize(PROJECT_ID, "character", "Aria")
        await session.commit()

        assert client.calls_of("synthesis") == 1
        assert "A young mage" in client.prompts[0]
        assert "Aria has mastered fire magic" in client.prompts[0]
        assert entity.description == "Aria（综合）"
        assert entity.source_chapter_ids == ["ch-1", "ch-2"]
        assert sorted(entity.source_record_ids) == sorted([first.id, second.id])
        assert entity.confidence_score == pytest.approx(0.85)
        assert entity.is_flagged is True
        assert entity.synthesis_meta["method"] == "ai_synthesis"
        assert entity.synthesis_meta["source_record_count"] == 2
        assert entity.synthesis_meta["model"] == "fake-model"

        # 粒度记录保持不变
        assert first.description == "A young mage"
        assert second.source_chapter_ids == ["ch-2"]

    async def test_single_record_needs_no_completion(self, session):
        await add_element(
            session, category="theme", name="Hope", description="Hope persists", source_chapter_ids=["ch-1"],
        )
        client = FakeCompletionClient()
        entity = await SynthesisService(session, make_llm_service(client)).synthesize(PROJECT_ID, "theme", "Hope")

        assert client.calls == 0
        assert entity.description == "Hope persists"
        assert entity.synthesis_meta["method"] == "single_record"
        assert entity.source_chapter_ids == ["ch-1"]

    async def test_unchanged_sources_are_not_resynthesized(self, session):
        await _add_aria_records(session)
        client = FakeCompletionClient(NovelResponder({}))
        service = SynthesisService(session, make_llm_service(client))

        first = await service.synthesize(PROJECT_ID, "character", "Aria")
        again = await service.synthesize(PROJECT_ID, "character", "Aria")
        assert again.id == first.id
        assert client.calls == 1

        await service.synthesize(PROJECT_ID, "character", "Aria", force=True)
        assert client.calls == 2

        await add_element(session, category="character", name="Aria", description="Aria leads", source_chapter_ids=["ch-3"])
        updated = await service.synthesize(PROJECT_ID, "character", "Aria")
        assert client.calls == 3
        assert updated.id == first.id
        assert updated.source_chapter_ids == ["ch-1", "ch-2", "ch-3"]

    async def test_missing_description_falls_back_to_longest(self, session):
        await _add_aria_records(session)
        client = FakeCompletionClient(lambda prompt: json.dumps({"details": {"role": "hero"}}))
        entity = await SynthesisService(session, make_llm_service(client)).synthesize(PROJECT_ID, "character", "Aria")

        assert entity.description == "Aria has mastered fire magic"
        assert entity.details == {"role": "hero"}

    async def test_errors(self, session):
        service = SynthesisService(session, None)
        with pytest.raises(ResourceNotFoundError):
            await service.synthesize(PROJECT_ID, "character", "Nobody")

        await _add_aria_records(session)
        with pytest.raises(InvalidParameterError):
            await service.synthesize(PROJECT_ID, "character", "Aria")

    async def test_synthesize_all_and_view(self, session):
        await _add_aria_records(session)
        await add_element(session, category="theme", name="Hope", source_chapter_ids=["ch-1"])
        await add_element(session, category="world_building", name="Ravenhold", source_chapter_ids=["ch-2"])
        await add_element(session, category="timeline_event", name="Siege", source_chapter_ids=["ch-2"])
        service = SynthesisService(session, make_llm_service(FakeCompletionClient(NovelResponder({}))))

        entities = await service.synthesize_all(PROJECT_ID)
        await session.commit()
        assert sorted(entity.name for entity in entities) == ["Aria", "Hope", "Ravenhold"]

        view = await service.get_synthesized_view(PROJECT_ID)
        assert len(view.synthesized_entities) == 3
        assert len(view.granular_records) == 4
        aria = next(entity for entity in view.synthesized_entities if entity.name == "Aria")
        assert len(view.source_attribution[aria.id]) == 2

        themes = await service.get_synthesized_view(PROJECT_ID, "theme")
        assert [entity.name for entity in themes.synthesized_entities] == ["Hope"]
        assert len(themes.granular_records) == 1

    async def test_synthesize_all_continues_after_failure(self, session):
        await _add_aria_records(session)
        await add_element(session, category="theme", name="Hope", source_chapter_ids=["ch-1"])
        client = FakeCompletionClient(lambda prompt: RuntimeError("down"))

        entities = await SynthesisService(session, make_llm_service(client)).synthesize_all(PROJECT_ID)
        assert [entity.name for entity in entities] == ["Hope"]
