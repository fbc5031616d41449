"""
时间线排序与依赖管理测试
"""

import pytest

from lorekeeper.exceptions import InvalidParameterError, ResourceNotFoundError
from lorekeeper.services.chronology_service import ChronologyService, parse_temporal_marker
from lorekeeper.services.content_hash_service import ContentHashService
from lorekeeper.services.dependency_manager import DependencyManager

from conftest import PROJECT_ID, add_element


class TestTemporalMarkers:
    """时间标记解析测试"""

    @pytest.mark.parametrize(
        "marker, marker_type, confidence, hint",
        [
            ("In chapter 3", "sequence", 0.9, 3),
            ("第5章开头", "sequence", 0.9, 5),
            ("the next morning", "absolute", 0.8, None),
            ("三年后的冬天", "absolute", 0.8, None),
            ("after the battle", "relative", 0.6, None),
            ("随后", "relative", 0.6, None),
            ("long ago", "relative", 0.4, None),
        ],
    )
    def test_parse(self, marker, marker_type, confidence, hint):
        parsed = parse_temporal_marker(marker)
        assert parsed.type == marker_type
        assert parsed.confidence == confidence
        assert parsed.order_hint == hint


class TestChronologyService:
    """时间线排序测试"""

    async def test_dense_order_by_marker_then_type(self, session):
        await add_element(session, category="timeline_event", name="Coronation", temporal_markers=["chapter 2"])
        await add_element(session, category="timeline_event", name="Birth", temporal_markers=["chapter 1"])
        await add_element(session, category="plot_point", name="Betrayal", temporal_markers=["chapter 2"])
        await add_element(session, category="character", name="Aria", temporal_markers=["chapter 1"])

        ordered = await ChronologyService(session).assign_order(PROJECT_ID)

        assert [(e.name, e.order) for e in ordered] == [("Birth", 1), ("Coronation", 2), ("Betrayal", 3)]
        assert all(e.confidence == pytest.approx(0.9) for e in ordered)

    async def test_dependencies_push_dependents_later(self, session):
        capture = await add_element(session, category="timeline_event", name="Capture", temporal_markers=["chapter 3"])
        escape = await add_element(
            session, category="timeline_event", name="Escape", details={"chronological_order": 1},
        )
        rescue = await add_element(
            session, category="plot_point", name="Rescue", dependency_elements=["escape"],
        )
        await DependencyManager(session).create(PROJECT_ID, capture.id, escape.id)

        ordered = await ChronologyService(session).assign_order(PROJECT_ID)
        await session.commit()

        assert [e.name for e in ordered] == ["Capture", "Escape", "Rescue"]
        assert [e.order for e in ordered] == [1, 2, 3]
        assert escape.chronological_order == 2
        assert escape.chronological_confidence == pytest.approx(0.7)
        assert rescue.chronological_confidence == pytest.approx(0.7)

    async def test_cycle_is_broken(self, session):
        await add_element(
            session, category="timeline_event", name="Dream",
            temporal_markers=["chapter 1"], dependency_elements=["Waking"],
        )
        await add_element(
            session, category="timeline_event", name="Waking",
            temporal_markers=["chapter 2"], dependency_elements=["Dream"],
        )

        ordered = await ChronologyService(session).assign_order(PROJECT_ID)

        assert [(e.name, e.order) for e in ordered] == [("Dream", 1), ("Waking", 2)]

    async def test_empty_project(self, session):
        assert await ChronologyService(session).assign_order(PROJECT_ID) == []


class TestDependencyManager:
    """依赖管理测试"""

    async def test_create_validates(self, session):
        first = await add_element(session, category="timeline_event", name="A")
        second = await add_element(session, category="timeline_event", name="B")
        manager = DependencyManager(session)

        with pytest.raises(InvalidParameterError):
            await manager.create(PROJECT_ID, first.id, first.id)
        with pytest.raises(InvalidParameterError):
            await manager.create(PROJECT_ID, first.id, second.id, strength=1.5)
        with pytest.raises(ResourceNotFoundError):
            await manager.create(PROJECT_ID, first.id, "missing")
        with pytest.raises(ResourceNotFoundError):
            await manager.create("other-project", first.id, second.id)

        edge = await manager.create(PROJECT_ID, first.id, second.id, strength=0.8)
        again = await manager.create(PROJECT_ID, first.id, second.id)
        assert again.id == edge.id
        assert edge.source_type == "timeline_event"

    async def test_invalidate_downstream(self, session):
        hashes = ContentHashService(session)
        for chapter_id in ("ch-1", "ch-2", "ch-3"):
            await hashes.commit(chapter_id, f"content of {chapter_id}", project_id=PROJECT_ID)
        first = await add_element(session, category="timeline_event", name="A", source_chapter_ids=["ch-1"])
        second = await add_element(session, category="timeline_event", name="B", source_chapter_ids=["ch-2"])
        third = await add_element(session, category="plot_point", name="C", source_chapter_ids=["ch-3"])
        manager = DependencyManager(session)
        await manager.create(PROJECT_ID, first.id, second.id)
        await manager.create(PROJECT_ID, second.id, third.id)

        assert [edge.dependent_id for edge in await manager.get_dependents(first.id)] == [second.id]
        assert [edge.source_id for edge in await manager.get_dependencies(third.id)] == [second.id]
        assert await manager.required_reprocessing([first.id]) == {second.id, third.id}
        assert await manager.project_graph(PROJECT_ID) == {first.id: [second.id], second.id: [third.id]}

        marked = await manager.invalidate_downstream(PROJECT_ID, [first.id])
        assert marked == ["ch-2", "ch-3"]
        assert await hashes.has_changed("ch-1", "content of ch-1") is False
        assert await hashes.has_changed("ch-2", "content of ch-2") is True
        assert await hashes.has_changed("ch-3", "content of ch-3") is True

        assert await manager.invalidate_downstream(PROJECT_ID, [third.id]) == []
        assert await manager.remove(second.id) == 2
        assert await manager.project_graph(PROJECT_ID) == {}
