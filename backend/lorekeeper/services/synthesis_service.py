"""
知识合成服务

同一项目内 (类别, 名称) 相同的多条粒度记录合成为一条视图记录，写入 synthesized_entities。
原始粒度记录保持不变；单条记录不调用补全服务，直接作为合成结果。
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.constants import SYNTHESIS_CATEGORIES, KnowledgeCategory, LLMConstants
from ..exceptions import InvalidParameterError, ResourceNotFoundError
from ..models import NarrativeElement, SynthesizedEntity
from ..repositories import NarrativeElementRepository, SynthesizedEntityRepository
from ..schemas.analysis import GranularRecordOut, SynthesizedEntityOut, SynthesizedView
from ..utils.json_utils import parse_llm_json_or_fail
from .llm_service import LLMService
from .prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)


def _unique(values: List[Any]) -> List[str]:
    return list(dict.fromkeys(str(value) for value in values))


def source_signature(records: List[NarrativeElement]) -> str:
    """来源记录内容指纹，未变化时不重复合成"""
    payload = [
        [
            record.id, record.description, record.subcategory, record.evidence, record.details or {},
            record.confidence_score, record.is_flagged, record.is_verified, record.source_chapter_ids or [],
        ]
        for record in sorted(records, key=lambda r: r.id)
    ]
    raw = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SynthesisService:
    """跨章节知识合成"""

    def __init__(
        self,
        session: AsyncSession,
        llm_service: Optional[LLMService],
        *,
        prompt_builder: Optional[PromptBuilder] = None,
        temperature: float = 0.3,
    ):
        self.session = session
        self.llm_service = llm_service
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.temperature = temperature
        self.element_repo = NarrativeElementRepository(session)
        self.entity_repo = SynthesizedEntityRepository(session)

    async def synthesize(
        self,
        project_id: str,
        category: str,
        entity_name: str,
        *,
        force: bool = False,
    ) -> SynthesizedEntity:
        """
        合成指定实体

        来源记录与上次合成时一致且未指定 force 时直接返回已有结果。

        Raises:
            ResourceNotFoundError: 没有该名称的记录
            LLMServiceError / JSONParseError: 多条记录合成时补全调用失败
        """
        category = KnowledgeCategory(category).value
        records = await self.element_repo.find_by_name(project_id, category, entity_name)
        if not records:
            raise ResourceNotFoundError("叙事元素", f"{category}:{entity_name}")

        signature = source_signature(records)
        entity = await self.entity_repo.get_by_name(project_id, category, entity_name)
        if entity is not None and not force and (entity.synthesis_meta or {}).get("source_signature") == signature:
            logger.debug("来源记录未变化，跳过合成: category=%s name=%s", category, entity_name)
            return entity

        chapter_ids = _unique([cid for record in records for cid in (record.source_chapter_ids or [])])
        record_ids = [record.id for record in records]
        base = {
            "confidence_score": max(record.confidence_score for record in records),
            "is_flagged": any(record.is_flagged for record in records),
            "is_verified": all(record.is_verified for record in records),
            "source_chapter_ids": chapter_ids,
            "source_record_ids": record_ids,
        }

        if len(records) == 1:
            record = records[0]
            values = {
                **base,
                "description": record.description,
                "subcategory": record.subcategory,
                "evidence": record.evidence,
                "details": dict(record.details or {}),
                "synthesis_meta": {"source_record_count": 1, "method": "single_record"},
            }
        else:
            values = {**base, **await self._synthesize_records(category, entity_name, records)}
        values["synthesis_meta"] = {**values["synthesis_meta"], "source_signature": signature}

        if entity is None:
            entity = SynthesizedEntity(project_id=project_id, category=category, name=entity_name, **values)
            await self.entity_repo.add(entity)
        else:
            for key, value in values.items():
                setattr(entity, key, value)
            await self.session.flush()

        logger.info(
            "知识合成完成: project_id=%s category=%s name=%s sources=%d chapters=%d",
            project_id, category, entity_name, len(records), len(chapter_ids),
        )
        return entity

    async def _synthesize_records(
        self,
        category: str,
        entity_name: str,
        records: List[NarrativeElement],
    ) -> Dict[str, Any]:
        if self.llm_service is None:
            raise InvalidParameterError("未配置补全服务，无法合成多条记录", parameter="llm_service")

        prompt = self.prompt_builder.build_synthesis_prompt(
            category,
            entity_name,
            [
                {
                    "name": record.name,
                    "description": record.description,
                    "subcategory": record.subcategory,
                    "evidence": record.evidence,
                    "details": record.details or {},
                    "confidence_score": record.confidence_score,
                    "source_chapter_ids": record.source_chapter_ids or [],
                }
                for record in records
            ],
        )
        response = await self.llm_service.generate(
            prompt,
            temperature=self.temperature,
            max_tokens=LLMConstants.SYNTHESIS_MAX_TOKENS,
            purpose="synthesis",
        )
        data = parse_llm_json_or_fail(response, f"知识合成 {category}:{entity_name}")
        if not isinstance(data, dict):
            data = {}

        details = data.get("details")
        description = data.get("description")
        evidence = data.get("evidence")
        longest = max((record.description or "" for record in records), key=len) or None
        return {
            "description": description if isinstance(description, str) and description.strip() else longest,
            "subcategory": data.get("subcategory") if isinstance(data.get("subcategory"), str) else records[0].subcategory,
            "evidence": evidence if isinstance(evidence, str) and evidence.strip()
            else "\n".join(_unique([r.evidence for r in records if r.evidence])) or None,
            "details": details if isinstance(details, dict) else {},
            "synthesis_meta": {
                "source_record_count": len(records),
                "method": "ai_synthesis",
                "model": self.llm_service.model_name,
                "reasoning": data.get("reasoning"),
                "conflicts_resolved": data.get("conflicts_resolved") or [],
                "individual_flags": [
                    {"record_id": r.id, "is_flagged": r.is_flagged, "is_verified": r.is_verified}
                    for r in records
                ],
            },
        }

    async def synthesize_all(self, project_id: str, category: Optional[str] = None) -> List[SynthesizedEntity]:
        """合成项目内全部（或指定类别的）实体；单个实体失败只记录日志"""
        categories = [KnowledgeCategory(category)] if category else SYNTHESIS_CATEGORIES
        elements = await self.element_repo.list_by_categories(project_id, [c.value for c in categories])

        groups = list(dict.fromkeys((element.category, element.name) for element in elements))
        results: List[SynthesizedEntity] = []
        failures = 0
        for group_category, name in groups:
            try:
                results.append(await self.synthesize(project_id, group_category, name))
            except Exception as exc:
                failures += 1
                logger.error(
                    "知识合成失败: project_id=%s category=%s name=%s error=%s",
                    project_id, group_category, name, exc,
                )

        logger.info(
            "全量合成完成: project_id=%s entities=%d failures=%d",
            project_id, len(results), failures,
        )
        return results

    async def get_synthesized_view(self, project_id: str, category: Optional[str] = None) -> SynthesizedView:
        """合成视图：合成实体 + 粒度记录 + 合成实体到来源记录的映射"""
        categories = [KnowledgeCategory(category)] if category else SYNTHESIS_CATEGORIES
        entities = await self.entity_repo.list_by_category(project_id, category)
        records = await self.element_repo.list_by_categories(project_id, [c.value for c in categories])

        return SynthesizedView(
            synthesized_entities=[SynthesizedEntityOut.model_validate(entity) for entity in entities],
            granular_records=[GranularRecordOut.model_validate(record) for record in records],
            source_attribution={entity.id: list(entity.source_record_ids or []) for entity in entities},
        )


__all__ = [
    "SynthesisService",
]
