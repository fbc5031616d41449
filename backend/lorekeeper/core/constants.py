"""
常量定义模块

集中管理知识类别、合并动作、相似度建议等枚举，消除魔术字符串。
"""

from enum import Enum
from typing import Dict, List


class KnowledgeCategory(str, Enum):
    """叙事元素类别

    继承str使其可以直接与数据库中的字符串比较。
    """
    CHARACTER = "character"
    RELATIONSHIP = "relationship"
    TIMELINE_EVENT = "timeline_event"
    PLOT_THREAD = "plot_thread"
    PLOT_POINT = "plot_point"
    CHAPTER_SUMMARY = "chapter_summary"
    WORLD_BUILDING = "world_building"
    THEME = "theme"


class MergeAction(str, Enum):
    """合并裁决动作"""
    MERGE = "merge"
    DISCARD = "discard"
    KEEP_DISTINCT = "keep_distinct"


class RecommendedAction(str, Enum):
    """章节相似度分级后的建议动作"""
    SKIP_AND_LINK = "skip_and_link"
    PROCEED_WITH_ENHANCED_DEDUP = "proceed_with_enhanced_dedup"
    PROCEED_NORMAL = "proceed_normal"


class DedupResolution(str, Enum):
    """单条候选经过去重后的最终去向"""
    STORED = "stored"                          # 作为新记录保存
    EXACT_DUPLICATE = "exact_duplicate"        # 精确重复，直接丢弃
    MERGED = "merged"                          # 合并进已有记录
    DISCARDED = "discarded"                    # 裁决为冗余，丢弃
    MANUAL_RESOLUTION = "requires_manual_resolution"  # 已有记录被用户编辑过
    REJECTED = "rejected"                      # 校验失败
    FAILED = "failed"                          # 写入失败


# 抽取响应中的 JSON 键 -> 类别
EXTRACTION_KEYS: Dict[str, KnowledgeCategory] = {
    "characters": KnowledgeCategory.CHARACTER,
    "relationships": KnowledgeCategory.RELATIONSHIP,
    "timeline_events": KnowledgeCategory.TIMELINE_EVENT,
    "plot_threads": KnowledgeCategory.PLOT_THREAD,
    "plot_points": KnowledgeCategory.PLOT_POINT,
    "chapter_summaries": KnowledgeCategory.CHAPTER_SUMMARY,
    "world_building": KnowledgeCategory.WORLD_BUILDING,
    "themes": KnowledgeCategory.THEME,
}

CATEGORY_KEYS: Dict[KnowledgeCategory, str] = {value: key for key, value in EXTRACTION_KEYS.items()}


class GapCategory(str, Enum):
    """缺口检测覆盖的类别（对外使用驼峰命名）"""
    RELATIONSHIPS = "relationships"
    TIMELINE_EVENTS = "timelineEvents"
    PLOT_THREADS = "plotThreads"
    CHAPTER_SUMMARIES = "chapterSummaries"
    WORLD_BUILDING = "worldBuilding"
    THEMES = "themes"


GAP_CATEGORY_MAP: Dict[GapCategory, KnowledgeCategory] = {
    GapCategory.RELATIONSHIPS: KnowledgeCategory.RELATIONSHIP,
    GapCategory.TIMELINE_EVENTS: KnowledgeCategory.TIMELINE_EVENT,
    GapCategory.PLOT_THREADS: KnowledgeCategory.PLOT_THREAD,
    GapCategory.CHAPTER_SUMMARIES: KnowledgeCategory.CHAPTER_SUMMARY,
    GapCategory.WORLD_BUILDING: KnowledgeCategory.WORLD_BUILDING,
    GapCategory.THEMES: KnowledgeCategory.THEME,
}

# 需要跨章节聚合上下文才能抽取的类别
CONTEXT_DEPENDENT_GAPS: List[GapCategory] = [
    GapCategory.RELATIONSHIPS,
    GapCategory.THEMES,
    GapCategory.WORLD_BUILDING,
]

# 可以逐章独立抽取的类别（情节线缺口按章节抽取情节线与情节点）
STANDALONE_GAPS: List[GapCategory] = [
    GapCategory.TIMELINE_EVENTS,
    GapCategory.CHAPTER_SUMMARIES,
    GapCategory.PLOT_THREADS,
]

# 补全某个缺口时一并抽取的类别（关系依赖人物，情节点依附情节线）
GAP_EXTRACTION_CATEGORIES: Dict[GapCategory, List[KnowledgeCategory]] = {
    GapCategory.RELATIONSHIPS: [KnowledgeCategory.CHARACTER, KnowledgeCategory.RELATIONSHIP],
    GapCategory.TIMELINE_EVENTS: [KnowledgeCategory.TIMELINE_EVENT],
    GapCategory.PLOT_THREADS: [KnowledgeCategory.PLOT_THREAD, KnowledgeCategory.PLOT_POINT],
    GapCategory.CHAPTER_SUMMARIES: [KnowledgeCategory.CHAPTER_SUMMARY],
    GapCategory.WORLD_BUILDING: [KnowledgeCategory.WORLD_BUILDING],
    GapCategory.THEMES: [KnowledgeCategory.THEME],
}

# 时间线排序时的类型优先级（越小越靠前）
CHRONOLOGY_TYPE_PRIORITY: Dict[KnowledgeCategory, int] = {
    KnowledgeCategory.TIMELINE_EVENT: 1,
    KnowledgeCategory.PLOT_POINT: 2,
    KnowledgeCategory.PLOT_THREAD: 3,
    KnowledgeCategory.RELATIONSHIP: 4,
    KnowledgeCategory.CHAPTER_SUMMARY: 5,
}
CHRONOLOGY_DEFAULT_PRIORITY = 6

# 参与时间线排序的类别
CHRONOLOGY_CATEGORIES: List[KnowledgeCategory] = list(CHRONOLOGY_TYPE_PRIORITY.keys())

# 参与知识合成的类别
SYNTHESIS_CATEGORIES: List[KnowledgeCategory] = [
    KnowledgeCategory.CHARACTER,
    KnowledgeCategory.WORLD_BUILDING,
    KnowledgeCategory.THEME,
]


class LLMConstants:
    """LLM调用相关常量"""

    EXTRACTION_MAX_TOKENS = 4096
    MERGE_DECISION_MAX_TOKENS = 1000
    SYNTHESIS_MAX_TOKENS = 2048

    # 重试等待（秒）
    TRANSIENT_BACKOFF_BASE = 2      # 网络/超时：2 ** (attempt + 1)
    RATE_LIMIT_BACKOFF_STEP = 10    # 限流：10 * (attempt + 1)


class HashConstants:
    """内容哈希相关常量"""

    PROCESSING_VERSION = "2.0"
    WEAK_HASH_PREFIX = "weak:"
