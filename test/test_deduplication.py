"""
保守去重测试
"""

import copy
import json

import pytest

from lorekeeper.core.constants import DedupResolution, KnowledgeCategory, MergeAction
from lorekeeper.models import NarrativeElement
from lorekeeper.repositories import KnowledgeChangeLogRepository, NarrativeElementRepository
from lorekeeper.schemas.knowledge import coerce_extraction, coerce_item
from lorekeeper.services.deduplication import (
    DeduplicationService,
    MergeDecisionEngine,
    identity_key,
    merge_payloads,
)
from lorekeeper.services.deduplication import deduplication_service as dedup_module

from conftest import (
    PROJECT_ID,
    FakeCompletionClient,
    OneHotEmbeddingProvider,
    add_element,
    blended_vector,
    make_embedding_service,
    make_llm_service,
    unit_vector,
)


async def _stored_snapshot(session, element: NarrativeElement) -> dict:
    """从数据库重新加载后的全部列值"""
    await session.refresh(element)
    return {
        column.key: copy.deepcopy(getattr(element, column.key))
        for column in NarrativeElement.__table__.columns
    }


def _merge_reply(action: str, confidence: float = 0.9, **extra) -> FakeCompletionClient:
    reply = {"action": action, "reason": "测试裁决", "confidence": confidence, **extra}
    return FakeCompletionClient(lambda prompt: json.dumps(reply, ensure_ascii=False))


def _service(session, client=None, provider=None) -> DeduplicationService:
    client = client or FakeCompletionClient()
    return DeduplicationService(
        session,
        make_embedding_service(provider or OneHotEmbeddingProvider(dimension=64)),
        MergeDecisionEngine(make_llm_service(client)),
    )


def _siege_provider(similarity: float) -> OneHotEmbeddingProvider:
    return OneHotEmbeddingProvider(dimension=64, overrides={
        "Siege of Ravenhold": unit_vector(0),
        "Fall of Ravenhold": blended_vector(0, 1, similarity),
    })


async def _add_siege(session, **overrides):
    values = {
        "category": "timeline_event",
        "name": "Siege of Ravenhold",
        "description": "Short.",
        "confidence_score": 0.6,
        "source_chapter_ids": ["ch-1"],
        "details": {"event_name": "Siege of Ravenhold", "event_type": "scene", "characters_involved": ["Aria"]},
    }
    values.update(overrides)
    return await add_element(session, **values)


def _fall_batch(**fields):
    item = {
        "event_name": "Fall of Ravenhold",
        "event_description": "The walls crumble at dawn.",
        "characters_involved": ["Marcus"],
        "confidence_score": 0.8,
    }
    item.update(fields)
    return coerce_extraction(
        {"timeline_events": [item]},
        [KnowledgeCategory.TIMELINE_EVENT],
        source_chapter_ids=["ch-2"],
    )


async def _count(session, category: str) -> int:
    counts = await NarrativeElementRepository(session).count_by_category(PROJECT_ID)
    return counts.get(category, 0)


class TestIdentity:
    """身份键与合并规则测试"""

    def test_relationship_key_ignores_direction(self):
        forward = coerce_item(KnowledgeCategory.RELATIONSHIP, {
            "character_a_name": "Aria", "character_b_name": "Marcus", "relationship_type": "friend",
        })
        backward = coerce_item(KnowledgeCategory.RELATIONSHIP, {
            "character_a_name": "marcus ", "character_b_name": "ARIA", "relationship_type": "Friend",
        })
        assert identity_key(forward) == identity_key(backward)

    def test_granular_key_includes_chapters(self):
        first = coerce_item(KnowledgeCategory.CHARACTER, {"name": "Aria"}, source_chapter_ids=["ch-1"])
        second = coerce_item(KnowledgeCategory.CHARACTER, {"name": "Aria"}, source_chapter_ids=["ch-2"])
        assert identity_key(first) != identity_key(second)

    def test_merge_payloads_rules(self):
        existing = NarrativeElement(
            project_id=PROJECT_ID,
            category="timeline_event",
            name="Siege of Ravenhold",
            description="A long and detailed account of the siege.",
            evidence="first quote",
            details={"event_name": "Siege of Ravenhold", "characters_involved": ["Aria"], "significance": 0.4},
            confidence_score=0.9,
            source_chapter_ids=["ch-1"],
            temporal_markers=[],
            dependency_elements=[],
        )
        incoming = coerce_item(
            KnowledgeCategory.TIMELINE_EVENT,
            {
                "event_name": "Fall of Ravenhold",
                "description": "Short.",
                "evidence": "second quote",
                "characters_involved": ["Marcus", "Aria"],
                "significance": 0.8,
                "confidence_score": 0.5,
            },
            source_chapter_ids=["ch-2"],
        )

        merged = merge_payloads(existing, incoming)

        assert merged["description"] == "A long and detailed account of the siege."
        assert merged["evidence"] == "first quote\nsecond quote"
        assert merged["confidence_score"] == 0.9
        assert merged["source_chapter_ids"] == ["ch-1", "ch-2"]
        assert merged["details"]["characters_involved"] == ["Aria", "Marcus"]
        assert merged["details"]["significance"] == 0.8
        assert merged["details"]["event_name"] == "Siege of Ravenhold"
        # 输入记录本身不变
        assert existing.details["characters_involved"] == ["Aria"]


class TestMergeDecisionEngine:
    """合并裁决测试"""

    def _engine(self, client=None) -> MergeDecisionEngine:
        return MergeDecisionEngine(make_llm_service(client or FakeCompletionClient()))

    def test_parse_valid_merge(self):
        decision = self._engine().parse_decision(json.dumps({
            "action": "MERGE", "reason": "同一事件", "confidence": 0.9,
            "mergedData": {"description": "merged"},
        }))
        assert decision.action == MergeAction.MERGE
        assert decision.confidence == pytest.approx(0.9)
        assert decision.merged_data == {"description": "merged"}
        assert decision.fallback is False

    def test_invalid_action_keeps_distinct(self):
        decision = self._engine().parse_decision('{"action": "combine", "confidence": 0.9, "mergedData": {"a": 1}}')
        assert decision.action == MergeAction.KEEP_DISTINCT
        assert decision.merged_data == {}
        assert decision.reason == "未给出理由"

    @pytest.mark.parametrize("confidence", [3, -0.1, "high", True, None])
    def test_invalid_confidence_substituted(self, confidence):
        decision = self._engine().parse_decision(json.dumps({"action": "discard", "confidence": confidence}))
        assert decision.action == MergeAction.DISCARD
        assert decision.confidence == pytest.approx(0.7)

    def test_garbage_falls_back(self):
        decision = self._engine().parse_decision("I think they are the same")
        assert decision.action == MergeAction.KEEP_DISTINCT
        assert decision.confidence == pytest.approx(0.5)
        assert decision.fallback is True

    async def test_call_failure_falls_back(self):
        client = FakeCompletionClient(lambda prompt: RuntimeError("down"))
        decision = await self._engine(client).evaluate("character", {"name": "a"}, {"name": "b"})
        assert decision.action == MergeAction.KEEP_DISTINCT
        assert decision.confidence == pytest.approx(0.5)
        assert decision.fallback is True


class TestDeduplicationService:
    """去重服务测试"""

    async def test_exact_duplicate_leaves_existing_untouched(self, session):
        existing = await _add_siege(session)
        before = await _stored_snapshot(session, existing)
        provider = OneHotEmbeddingProvider(dimension=64)
        client = FakeCompletionClient()
        batch = coerce_extraction(
            {"timeline_events": [{
                "event_name": " siege of  RAVENHOLD", "event_type": "Scene",
                "description": "A much longer description that would otherwise win a merge.",
                "confidence_score": 0.99,
            }]},
            [KnowledgeCategory.TIMELINE_EVENT],
            source_chapter_ids=["ch-5"],
        )

        report = await _service(session, client, provider).process_batch(PROJECT_ID, batch)
        await session.commit()

        assert [o.resolution for o in report.outcomes] == [DedupResolution.EXACT_DUPLICATE]
        assert report.outcomes[0].matched_id == existing.id
        assert await _count(session, "timeline_event") == 1
        assert await _stored_snapshot(session, existing) == before
        assert client.calls == 0
        assert provider.calls == 0

    async def test_reverse_relationship_is_exact_duplicate(self, session):
        await add_element(
            session, category="relationship", name="Aria & Marcus",
            details={"character_a_name": "Aria", "character_b_name": "Marcus", "relationship_type": "friend"},
        )
        batch = coerce_extraction(
            {"relationships": [{"character_a_name": "Marcus", "character_b_name": "Aria", "relationship_type": "friend"}]},
            [KnowledgeCategory.RELATIONSHIP],
            source_chapter_ids=["ch-2"],
        )

        report = await _service(session).process_batch(PROJECT_ID, batch)
        assert report.count(DedupResolution.EXACT_DUPLICATE) == 1
        assert await _count(session, "relationship") == 1

    async def test_granular_categories_keep_per_chapter_records(self, session):
        client = FakeCompletionClient()
        service = _service(session, client)
        first = coerce_extraction({"characters": [{"name": "Aria", "description": "a mage"}]},
                                  [KnowledgeCategory.CHARACTER], source_chapter_ids=["ch-1"])
        second = coerce_extraction({"characters": [{"name": "Aria", "description": "a wiser mage"}]},
                                   [KnowledgeCategory.CHARACTER], source_chapter_ids=["ch-2"])

        assert (await service.process_batch(PROJECT_ID, first)).stored == 1
        assert (await service.process_batch(PROJECT_ID, second)).stored == 1
        again = await service.process_batch(PROJECT_ID, second)

        assert again.count(DedupResolution.EXACT_DUPLICATE) == 1
        assert await _count(session, "character") == 2
        assert client.calls == 0

    async def test_semantic_match_merges(self, session):
        existing = await _add_siege(session)
        merged_description = "The siege ends as the walls crumble at dawn and the city falls."
        client = _merge_reply("merge", mergedData={"description": merged_description})

        report = await _service(session, client, _siege_provider(0.9)).process_batch(PROJECT_ID, _fall_batch())
        await session.commit()

        outcome = report.outcomes[0]
        assert outcome.resolution == DedupResolution.MERGED
        assert outcome.element_id == existing.id
        assert outcome.similarity == pytest.approx(0.9)
        assert client.calls == 1
        assert await _count(session, "timeline_event") == 1

        await session.refresh(existing)
        assert existing.name == "Siege of Ravenhold"
        assert existing.description == merged_description
        assert existing.source_chapter_ids == ["ch-1", "ch-2"]
        assert existing.confidence_score == pytest.approx(0.8)
        assert existing.details["characters_involved"] == ["Aria", "Marcus"]
        assert existing.details["event_name"] == "Siege of Ravenhold"

    async def test_discard_records_candidate(self, session):
        existing = await _add_siege(session)
        before = await _stored_snapshot(session, existing)

        report = await _service(session, _merge_reply("discard"), _siege_provider(0.9)).process_batch(
            PROJECT_ID, _fall_batch(),
        )
        await session.commit()

        assert report.count(DedupResolution.DISCARDED) == 1
        assert await _count(session, "timeline_event") == 1
        assert await _stored_snapshot(session, existing) == before

        logs = await KnowledgeChangeLogRepository(session).list_for_project(PROJECT_ID, change_type="discarded")
        assert len(logs) == 1
        assert logs[0].element_id == existing.id
        assert logs[0].payload["candidate"]["event_name"] == "Fall of Ravenhold"
        assert logs[0].payload["arbiter_action"] == "discard"

    async def test_keep_distinct_stores_new_record(self, session):
        await _add_siege(session)
        report = await _service(session, _merge_reply("keep_distinct"), _siege_provider(0.9)).process_batch(
            PROJECT_ID, _fall_batch(),
        )
        assert report.stored == 1
        assert report.outcomes[0].matched_id is not None
        assert await _count(session, "timeline_event") == 2

    async def test_user_edited_match_requires_manual_resolution(self, session):
        existing = await _add_siege(session, user_edited=True)
        before = await _stored_snapshot(session, existing)
        client = _merge_reply("merge", mergedData={"description": "an overwrite attempt that is quite long"})

        report = await _service(session, client, _siege_provider(0.9)).process_batch(PROJECT_ID, _fall_batch())
        await session.commit()

        outcome = report.outcomes[0]
        assert outcome.resolution == DedupResolution.MANUAL_RESOLUTION
        assert outcome.matched_id == existing.id
        assert outcome.decision.action == MergeAction.MERGE
        assert client.calls == 1
        assert await _stored_snapshot(session, existing) == before
        assert await _count(session, "timeline_event") == 1

        logs = await KnowledgeChangeLogRepository(session).list_for_project(
            PROJECT_ID, change_type="requires_manual_resolution",
        )
        assert len(logs) == 1
        assert logs[0].payload["candidate"]["event_name"] == "Fall of Ravenhold"
        assert report.to_summary().manual_resolution == 1

    async def test_below_threshold_stores_without_arbiter(self, session):
        await _add_siege(session)
        client = _merge_reply("merge")
        report = await _service(session, client, _siege_provider(0.5)).process_batch(PROJECT_ID, _fall_batch())

        assert report.stored == 1
        assert report.outcomes[0].similarity == pytest.approx(0.5)
        assert client.calls == 0

    @pytest.mark.parametrize(
        "force_semantic, resolution, arbiter_calls",
        [(False, DedupResolution.STORED, 0), (True, DedupResolution.DISCARDED, 1)],
    )
    async def test_force_semantic_lowers_threshold(self, session, force_semantic, resolution, arbiter_calls):
        await _add_siege(session)
        client = _merge_reply("discard")

        outcome = await _service(session, client, _siege_provider(0.72)).process_item(
            PROJECT_ID, _fall_batch().timeline_events[0], force_semantic=force_semantic,
        )
        assert outcome.resolution == resolution
        assert outcome.similarity == pytest.approx(0.72)
        assert client.calls == arbiter_calls

    async def test_single_item_write_failure_does_not_stop_batch(self, session, monkeypatch):
        """写库失败（NOT NULL 约束）只回滚该条，后续条目照常写入并可提交"""
        original = dedup_module.element_from_item

        def broken_element(project_id, item):
            element = original(project_id, item)
            if item.display_name == "Broken":
                element.name = None
            return element

        monkeypatch.setattr(dedup_module, "element_from_item", broken_element)
        service = _service(session)
        batch = coerce_extraction(
            {"themes": [{"name": "Broken"}, {"name": "Hope"}]},
            [KnowledgeCategory.THEME],
            source_chapter_ids=["ch-1"],
        )

        report = await service.process_batch(PROJECT_ID, batch)
        summary = report.to_summary()
        assert report.errors == 1
        assert report.stored == 1
        assert summary.errors == 1
        assert report.stored_categories == ["theme"]
        failed = [outcome for outcome in report.outcomes if outcome.resolution == DedupResolution.FAILED]
        assert [outcome.name for outcome in failed] == ["Broken"]
        assert failed[0].reason.startswith("IntegrityError")

        await session.commit()
        assert await _count(session, "theme") == 1
