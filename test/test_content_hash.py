"""
章节内容变更检测测试
"""

from lorekeeper.core.constants import HashConstants
from lorekeeper.services.content_hash_service import ContentHashService


def _broken_digest(data: bytes) -> str:
    raise RuntimeError("摘要服务不可用")


class TestContentHashService:
    """ContentHashService 测试"""

    async def test_new_chapter_counts_as_changed(self, session):
        service = ContentHashService(session)
        assert await service.has_changed("ch-1", "Aria walked into the city.") is True

    async def test_commit_then_unchanged(self, session, clock):
        service = ContentHashService(session, clock=clock)
        record = await service.commit("ch-1", "Aria walked into the city.", project_id="p")
        await session.commit()

        assert record.version == 1
        assert record.content_hash == service.generate_hash("Aria walked into the city.")
        assert record.last_processed_at == clock.now
        assert await service.has_changed("ch-1", "Aria walked into the city.") is False
        assert await service.has_changed("ch-1", "Aria walked out of the city.") is True

    async def test_recommit_increments_version(self, session):
        service = ContentHashService(session)
        await service.commit("ch-1", "first draft")
        record = await service.commit("ch-1", "second draft")

        assert record.version == 2
        assert record.content_hash == service.generate_hash("second draft")

    async def test_weak_hash_is_low_confidence_and_always_changed(self, session, clock):
        service = ContentHashService(session, digest=_broken_digest, clock=clock)
        record = await service.commit("ch-1", "some text")

        assert record.is_low_confidence is True
        assert record.content_hash.startswith(HashConstants.WEAK_HASH_PREFIX)
        assert record.content_hash.startswith("weak:9:")
        assert record.paragraph_hashes == []
        assert await service.has_changed("ch-1", "some text") is True

    async def test_needs_reprocessing_forces_change(self, session):
        service = ContentHashService(session)
        await service.commit("ch-1", "text")
        assert await service.mark_for_reprocessing(["ch-1"]) == 1
        assert await service.has_changed("ch-1", "text") is True

        record = await service.commit("ch-1", "text")
        assert record.needs_reprocessing is False
        assert await service.has_changed("ch-1", "text") is False

    async def test_processing_version_mismatch_forces_change(self, session):
        service = ContentHashService(session)
        record = await service.commit("ch-1", "text")
        record.processing_version = "1.0"
        await session.flush()
        assert await service.has_changed("ch-1", "text") is True

    async def test_detect_changes_batch(self, session):
        service = ContentHashService(session)
        await service.commit("ch-1", "one")
        result = await service.detect_changes([("ch-1", "one"), ("ch-2", "two")])
        assert result == {"ch-1": False, "ch-2": True}

    def test_paragraph_hashes_and_diff(self):
        service = ContentHashService(None)
        before = service.generate_paragraph_hashes("First paragraph.\n\nSecond paragraph.")
        after = service.generate_paragraph_hashes("First paragraph.\n\n  \nEdited paragraph.\n\nThird.")

        assert len(before) == 2
        assert len(after) == 3
        assert ContentHashService.changed_paragraphs(before, after) == [1, 2]
