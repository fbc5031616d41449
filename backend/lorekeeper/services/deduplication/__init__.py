"""
保守去重模块

精确重复判定、语义候选检索、合并裁决与用户编辑保护。
"""

from .deduplication_service import DedupOutcome, DedupReport, DeduplicationService
from .identity import (
    canonical_text,
    element_from_item,
    element_identity_key,
    identity_key,
    item_from_element,
    merge_payloads,
)
from .merge_decision_engine import MergeDecision, MergeDecisionEngine

__all__ = [
    "DedupOutcome",
    "DedupReport",
    "DeduplicationService",
    "MergeDecision",
    "MergeDecisionEngine",
    "canonical_text",
    "element_from_item",
    "element_identity_key",
    "identity_key",
    "item_from_element",
    "merge_payloads",
]
