"""
章节内容变更检测

记录每个章节最近一次成功分析时的内容哈希。哈希只在该章节抽取与去重都成功后写入，
因此未变更的章节不会再次进入抽取流程，而失败的章节下次仍会被处理。
"""

import hashlib
import logging
import re
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.constants import HashConstants
from ..models import ContentHash
from ..models.mixins import utc_now
from ..repositories.content_hash_repository import ContentHashRepository

logger = logging.getLogger(__name__)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ContentHashService:
    """章节内容哈希的生成、比较与提交"""

    def __init__(
        self,
        session: AsyncSession,
        *,
        digest: Callable[[bytes], str] = _sha256_hex,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.repo = ContentHashRepository(session)
        self._digest = digest
        self._clock = clock

    # ------------------------------------------------------------------
    # 哈希生成
    # ------------------------------------------------------------------
    def generate_hash(self, text: str) -> str:
        """SHA-256 十六进制摘要"""
        return self._digest((text or "").encode("utf-8"))

    def _fingerprint(self, text: str) -> Tuple[str, bool]:
        """
        返回 (哈希, 是否低可信)

        摘要函数异常时退回 "weak:长度:时间戳"，这种记录永远视为已变更。
        """
        try:
            return self.generate_hash(text), False
        except Exception as exc:
            logger.warning("内容摘要计算失败，使用弱哈希: error=%s", exc)
            weak = f"{HashConstants.WEAK_HASH_PREFIX}{len(text or '')}:{int(self._clock().timestamp() * 1000)}"
            return weak, True

    def generate_paragraph_hashes(self, text: str) -> List[str]:
        """按空行切分段落并逐段计算哈希"""
        paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(text or "") if p.strip()]
        hashes: List[str] = []
        for paragraph in paragraphs:
            try:
                hashes.append(self.generate_hash(paragraph))
            except Exception as exc:
                logger.warning("段落摘要计算失败，跳过段落哈希: error=%s", exc)
                return []
        return hashes

    @staticmethod
    def changed_paragraphs(previous: Iterable[str], current: Iterable[str]) -> List[int]:
        """返回当前文本中新增或被修改的段落下标"""
        known = set(previous or [])
        return [index for index, digest in enumerate(current or []) if digest not in known]

    # ------------------------------------------------------------------
    # 变更检测
    # ------------------------------------------------------------------
    async def get_record(self, chapter_id: str) -> Optional[ContentHash]:
        return await self.repo.get_by_chapter(chapter_id)

    async def has_changed(self, chapter_id: str, current_text: str) -> bool:
        """
        判断章节是否需要重新处理

        没有记录、记录为弱哈希、被依赖失效标记、或哈希不同，均视为已变更。
        """
        record = await self.repo.get_by_chapter(chapter_id)
        if record is None:
            return True
        if record.is_low_confidence or record.needs_reprocessing:
            return True
        if record.processing_version != HashConstants.PROCESSING_VERSION:
            return True

        current_hash, weak = self._fingerprint(current_text)
        if weak:
            return True
        return current_hash != record.content_hash

    async def detect_changes(self, chapters: Iterable[Tuple[str, str]]) -> Dict[str, bool]:
        """批量检测，参数为 (chapter_id, text) 序列"""
        result: Dict[str, bool] = {}
        for chapter_id, text in chapters:
            result[chapter_id] = await self.has_changed(chapter_id, text)
        return result

    async def commit(
        self,
        chapter_id: str,
        current_text: str,
        *,
        project_id: Optional[str] = None,
    ) -> ContentHash:
        """章节处理成功后写入新哈希，版本号递增"""
        content_hash, weak = self._fingerprint(current_text)
        paragraph_hashes = [] if weak else self.generate_paragraph_hashes(current_text)
        now = self._clock()

        record = await self.repo.get_by_chapter(chapter_id)
        if record is None:
            record = ContentHash(
                chapter_id=chapter_id,
                project_id=project_id,
                content_hash=content_hash,
                paragraph_hashes=paragraph_hashes,
                is_low_confidence=weak,
                needs_reprocessing=False,
                processing_version=HashConstants.PROCESSING_VERSION,
                version=1,
                last_processed_at=now,
            )
            await self.repo.add(record)
        else:
            previous = list(record.paragraph_hashes or [])
            changed = self.changed_paragraphs(previous, paragraph_hashes)
            if changed:
                logger.debug("章节 %s 段落变化: %s", chapter_id, changed)
            record.content_hash = content_hash
            record.paragraph_hashes = paragraph_hashes
            record.is_low_confidence = weak
            record.needs_reprocessing = False
            record.processing_version = HashConstants.PROCESSING_VERSION
            record.version = (record.version or 0) + 1
            record.last_processed_at = now
            if project_id and not record.project_id:
                record.project_id = project_id
            await self.session.flush()

        logger.info(
            "章节内容哈希已提交: chapter_id=%s version=%d weak=%s",
            chapter_id, record.version, weak,
        )
        return record

    async def mark_for_reprocessing(self, chapter_ids: Iterable[str]) -> int:
        """标记章节需要重新处理（依赖失效时调用）"""
        ids = list(dict.fromkeys(chapter_ids))
        count = await self.repo.mark_needs_reprocessing(ids)
        if count:
            logger.info("已标记 %d 个章节需要重新处理", count)
        return count
