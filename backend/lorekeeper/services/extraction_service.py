"""
知识抽取服务

把章节正文（或多章聚合正文）按 token 上限分批，附带已有人物/关系上下文调用补全服务，
再把返回的 JSON 经 coerce_extraction 转换为按类别分组的结构化条目。
调用之间的固定间隔由 LLMService 的调度器保证。
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Union

from ..core.constants import KnowledgeCategory, LLMConstants
from ..core.pipeline_config import DedupConfig
from ..repositories import NarrativeElementRepository
from ..schemas.knowledge import ExtractionBatch, coerce_extraction
from ..utils.json_utils import parse_llm_json_safe
from .chunking import estimate_tokens
from .llm_service import LLMService
from .prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)

# 上下文中最多列出的已有人物/关系数量
MAX_CONTEXT_ENTRIES = 50


def batch_texts(texts: Sequence[str], max_tokens: int) -> List[str]:
    """
    把多段文本按顺序合并为不超过 max_tokens 的批次

    单段超过上限时独占一批，不做截断。
    """
    batches: List[str] = []
    current: List[str] = []
    current_tokens = 0.0
    for text in texts:
        if not text or not text.strip():
            continue
        tokens = estimate_tokens(text)
        if current and current_tokens + tokens > max_tokens:
            batches.append("\n\n".join(current))
            current, current_tokens = [], 0.0
        current.append(text)
        current_tokens += tokens
    if current:
        batches.append("\n\n".join(current))
    return batches


class ExtractionService:
    """知识抽取编排"""

    def __init__(
        self,
        llm_service: LLMService,
        *,
        prompt_builder: Optional[PromptBuilder] = None,
        batch_tokens: int = 6000,
        dedup_config: Optional[DedupConfig] = None,
        temperature: float = 0.2,
    ):
        self.llm_service = llm_service
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.batch_tokens = batch_tokens
        self.dedup_config = dedup_config or DedupConfig()
        self.temperature = temperature

    @staticmethod
    async def load_existing_context(
        element_repo: NarrativeElementRepository,
        project_id: str,
    ) -> Dict[str, List[str]]:
        """收集已有人物名与关系，供提示词避免产生冲突的命名"""
        characters = await element_repo.list_by_category(project_id, KnowledgeCategory.CHARACTER.value)
        relationships = await element_repo.list_by_category(project_id, KnowledgeCategory.RELATIONSHIP.value)

        character_names = list(dict.fromkeys(element.name for element in characters))
        relationship_lines = list(dict.fromkeys(
            f"{element.name}（{element.subcategory or 'unspecified'}）" for element in relationships
        ))
        return {
            "characters": character_names[:MAX_CONTEXT_ENTRIES],
            "relationships": relationship_lines[:MAX_CONTEXT_ENTRIES],
        }

    async def extract(
        self,
        text: Union[str, Sequence[str]],
        target_categories: Iterable[KnowledgeCategory],
        existing_context: Optional[Dict[str, List[str]]] = None,
        source_chapter_ids: Optional[List[str]] = None,
    ) -> ExtractionBatch:
        """
        抽取结构化知识

        Args:
            text: 正文，或按顺序排列的多个分块
            target_categories: 需要抽取的类别
            existing_context: 已有知识上下文
            source_chapter_ids: 正文来源章节，写入每条记录

        Returns:
            ExtractionBatch: 各批次结果的合并；格式错误的响应按空结果处理

        Raises:
            LLMServiceError: 补全调用重试耗尽
        """
        categories = [KnowledgeCategory(c) for c in target_categories]
        result = ExtractionBatch()
        if not categories:
            return result

        pieces = [text] if isinstance(text, str) else list(text)
        batches = batch_texts(pieces, self.batch_tokens)
        chapters = list(source_chapter_ids or [])

        for index, payload in enumerate(batches, start=1):
            prompt = self.prompt_builder.build_extraction_prompt(
                payload,
                categories,
                existing_context=existing_context,
                chapter_ids=chapters,
            )
            response = await self.llm_service.generate(
                prompt,
                temperature=self.temperature,
                max_tokens=LLMConstants.EXTRACTION_MAX_TOKENS,
                purpose="extraction",
            )

            parsed = parse_llm_json_safe(response)
            if parsed is None:
                logger.warning(
                    "抽取响应无法解析为JSON，本批按空结果处理: chapters=%s batch=%d/%d",
                    chapters, index, len(batches),
                )
            batch = coerce_extraction(
                parsed,
                categories,
                source_chapter_ids=chapters,
                default_confidence=self.dedup_config.default_confidence,
                low_confidence_threshold=self.dedup_config.low_confidence_threshold,
            )
            result.extend(batch)

        logger.info(
            "知识抽取完成: chapters=%s batches=%d counts=%s rejected=%d",
            chapters, len(batches), result.counts(), len(result.rejected),
        )
        return result


__all__ = [
    "ExtractionService",
    "batch_texts",
]
