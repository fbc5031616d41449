"""
合并裁决引擎

把新条目与最相似的已有条目交给补全服务裁决 merge / discard / keep_distinct。
任何异常或无法解析的回答都退回 keep_distinct，保证不会因裁决失败而丢失或覆盖数据。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ...core.constants import LLMConstants, MergeAction
from ...core.pipeline_config import DedupConfig
from ...utils.exception_helpers import log_exception
from ...utils.json_utils import parse_llm_json_safe
from ..llm_service import LLMService
from ..prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)


@dataclass
class MergeDecision:
    """一次合并裁决（不落库）"""

    action: MergeAction
    reason: str
    confidence: float
    merged_data: Dict[str, Any] = field(default_factory=dict)
    fallback: bool = False


class MergeDecisionEngine:
    """保守的合并裁决"""

    def __init__(
        self,
        llm_service: LLMService,
        *,
        prompt_builder: Optional[PromptBuilder] = None,
        config: Optional[DedupConfig] = None,
        temperature: float = 0.1,
    ):
        self.llm_service = llm_service
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.config = config or DedupConfig()
        self.temperature = temperature

    def _fallback(self, reason: str) -> MergeDecision:
        return MergeDecision(
            action=MergeAction.KEEP_DISTINCT,
            reason=reason,
            confidence=self.config.fallback_decision_confidence,
            fallback=True,
        )

    async def evaluate(
        self,
        item_type: str,
        new_item: Dict[str, Any],
        existing_item: Dict[str, Any],
    ) -> MergeDecision:
        """
        裁决两条记录的处理方式

        Returns:
            MergeDecision: 调用失败或回答无法解析时为 keep_distinct（置信度 0.5）
        """
        prompt = self.prompt_builder.build_merge_prompt(item_type, new_item, existing_item)
        try:
            response = await self.llm_service.generate(
                prompt,
                temperature=self.temperature,
                max_tokens=LLMConstants.MERGE_DECISION_MAX_TOKENS,
                purpose="merge_decision",
            )
        except Exception as exc:
            log_exception(exc, "合并裁决调用", logger, level="warning", include_traceback=False, item_type=item_type)
            return self._fallback("裁决服务调用失败，默认保持独立")

        return self.parse_decision(response)

    def parse_decision(self, response: Optional[str]) -> MergeDecision:
        """解析裁决回答：非法动作视为 keep_distinct，非法置信度替换为默认值"""
        data = parse_llm_json_safe(response)
        if not isinstance(data, dict):
            logger.warning("合并裁决回答无法解析，保持独立")
            return self._fallback("无法解析裁决结果，默认保持独立")

        raw_action = str(data.get("action") or "").strip().lower()
        try:
            action = MergeAction(raw_action)
        except ValueError:
            logger.warning("合并裁决返回非法动作，按保持独立处理: action=%s", raw_action)
            action = MergeAction.KEEP_DISTINCT

        confidence = data.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
            confidence = self.config.invalid_confidence_substitute

        merged = data.get("mergedData") or data.get("merged_data")
        reason = data.get("reason")
        return MergeDecision(
            action=action,
            reason=reason if isinstance(reason, str) and reason.strip() else "未给出理由",
            confidence=float(confidence),
            merged_data=merged if isinstance(merged, dict) and action == MergeAction.MERGE else {},
        )


__all__ = [
    "MergeDecision",
    "MergeDecisionEngine",
]
