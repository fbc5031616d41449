"""
Prompt构建服务

集中管理知识抽取、合并裁决、知识合成三类提示词。
模型只负责返回 JSON，所有字段在入库前仍会经过 schemas.knowledge 的校验。
"""

import json
from typing import Any, Dict, Iterable, List, Optional

from ..core.constants import CATEGORY_KEYS, KnowledgeCategory

# 各类别在抽取响应中的示例结构
_EXTRACTION_EXAMPLES: Dict[KnowledgeCategory, Dict[str, Any]] = {
    KnowledgeCategory.CHARACTER: {
        "name": "人物名",
        "description": "人物简介",
        "details": {
            "role": "protagonist/antagonist/supporting",
            "traits": ["特征1", "特征2"],
            "goals": "人物目标",
            "relationships": ["相关人物名"],
        },
        "evidence": "原文依据",
        "confidence_score": 0.85,
    },
    KnowledgeCategory.RELATIONSHIP: {
        "character_a_name": "人物A",
        "character_b_name": "人物B",
        "relationship_type": "friend/enemy/family/romantic/ally/mentor",
        "relationship_strength": 7,
        "description": "关系说明",
        "evidence": "原文依据",
        "confidence_score": 0.8,
    },
    KnowledgeCategory.TIMELINE_EVENT: {
        "event_name": "事件名",
        "event_type": "scene/flashback/background_event",
        "event_description": "发生了什么",
        "date_or_time_reference": "第三天清晨",
        "chronological_order": 1,
        "characters_involved": ["人物名"],
        "temporal_markers": ["chapter 3", "three days later"],
        "dependency_elements": ["必须先发生的事件名"],
        "confidence_score": 0.85,
    },
    KnowledgeCategory.PLOT_THREAD: {
        "thread_name": "主线任务",
        "thread_type": "main/subplot/backstory",
        "thread_status": "active/resolved/abandoned",
        "key_events": ["事件1", "事件2"],
        "characters_involved": ["人物名"],
        "description": "情节线说明",
        "confidence_score": 0.9,
    },
    KnowledgeCategory.PLOT_POINT: {
        "name": "情节点",
        "description": "情节点说明",
        "plot_thread_name": "所属情节线",
        "significance": "对故事的影响",
        "characters_involved": ["人物名"],
        "confidence_score": 0.8,
    },
    KnowledgeCategory.CHAPTER_SUMMARY: {
        "chapter_id": "章节ID",
        "title": "章节标题",
        "summary_short": "一两句话的摘要",
        "summary_long": "详细摘要",
        "key_events": ["关键事件"],
        "primary_focus": "本章焦点",
        "confidence_score": 0.9,
    },
    KnowledgeCategory.WORLD_BUILDING: {
        "name": "地点/物品/概念",
        "description": "设定说明",
        "details": {"type": "location/object/concept/rule", "significance": "对故事的意义"},
        "confidence_score": 0.8,
    },
    KnowledgeCategory.THEME: {
        "name": "主题名",
        "description": "主题如何被呈现",
        "examples": ["体现主题的片段"],
        "confidence_score": 0.75,
    },
}

_MERGE_GUIDANCE: Dict[str, str] = {
    KnowledgeCategory.RELATIONSHIP.value: """## 关系类指引
- 合并：同一对人物且关系类型相容（如 "friend" 与 "ally"），或新证据加深了理解
- 丢弃：完全重复且没有新信息
- 保持独立：关系动态不同或类型互斥
合并时拼接证据，关系强度取较大值。""",
    KnowledgeCategory.TIMELINE_EVENT.value: """## 时间线事件指引
- 合并：同一事件补充了细节或上下文，或是构成完整序列的连续动作
- 丢弃：完全重复且没有时间或描述上的补充
- 保持独立：不同事件，或视角差异明显
合并时给出综合两者细节的事件描述。""",
    KnowledgeCategory.PLOT_THREAD.value: """## 情节线指引
- 合并：同一叙事线索补充了事件或见解
- 丢弃：完全重复且没有新事件
- 保持独立：不同线索或侧重点明显不同
合并时汇总关键事件并完善描述。""",
}

_SYNTHESIS_INSTRUCTIONS: Dict[str, str] = {
    KnowledgeCategory.CHARACTER.value: (
        "请把不同章节中关于该人物的信息整合为一份完整的人物档案。"
        "合并描述、特征与证据且不重复，重点关注人物成长、能力、关系与关键特征。"
    ),
    KnowledgeCategory.WORLD_BUILDING.value: (
        "请把不同章节中关于该设定的地点、环境或世界元素细节整合为一条完整的世界观条目。"
    ),
    KnowledgeCategory.THEME.value: (
        "请综合该主题在不同章节中的呈现与发展，说明其演变与意义。"
    ),
}
_GENERIC_SYNTHESIS_INSTRUCTION = "请把不同章节中关于该条目的信息整合为一条完整、不重复的记录。"


def _dump(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, default=str)


class PromptBuilder:
    """
    提示词构建服务

    负责构建：
    - 知识抽取提示词（附带已有人物/关系上下文）
    - 合并裁决提示词（保守策略 + 类别指引）
    - 知识合成提示词
    """

    def build_extraction_prompt(
        self,
        text: str,
        target_categories: Iterable[KnowledgeCategory],
        existing_context: Optional[Dict[str, List[str]]] = None,
        chapter_ids: Optional[List[str]] = None,
    ) -> str:
        """
        构建知识抽取提示词

        Args:
            text: 待分析正文（单章或多章聚合）
            target_categories: 需要抽取的类别
            existing_context: 已有知识，如 {"characters": [...], "relationships": [...]}
            chapter_ids: 正文对应的章节ID
        """
        categories = [KnowledgeCategory(c) for c in target_categories]
        schema = {CATEGORY_KEYS[c]: [_EXTRACTION_EXAMPLES[c]] for c in categories}

        context_lines: List[str] = []
        for key, label in (("characters", "已知人物"), ("relationships", "已知关系")):
            names = (existing_context or {}).get(key) or []
            if names:
                context_lines.append(f"- {label}：{'；'.join(names)}")
        context_block = "\n".join(context_lines) if context_lines else "（暂无）"

        chapter_hint = ""
        if chapter_ids:
            chapter_hint = f"\n正文来源章节ID：{', '.join(chapter_ids)}（章节摘要的 chapter_id 必须取自其中）\n"

        return f"""## 任务

分析下面的小说正文，抽取结构化知识。只抽取以下类别：{', '.join(CATEGORY_KEYS[c] for c in categories)}。

## 已有知识

沿用已有名称，不要为同一人物或关系创造新的称呼：
{context_block}
{chapter_hint}
## 输出格式

返回一个 JSON 对象，结构如下（每个类别都是数组，没有内容时返回空数组）：

{_dump(schema)}

confidence_score 取 0 到 1，表示你对该条信息的把握程度。
只返回合法 JSON，不要附加说明文字，不要使用 Markdown 代码块。

## 正文

{text}"""

    def build_merge_prompt(
        self,
        item_type: str,
        new_item: Dict[str, Any],
        existing_item: Dict[str, Any],
    ) -> str:
        """构建合并裁决提示词"""
        prompt = f"""你是负责做合并决策的内容分析系统。

## 关键原则
1. 保留有价值的信息，绝不丢失重要细节
2. 新信息确有增益时，用它完善已有数据
3. 只有确实冗余、没有任何新增价值时才丢弃
4. 拿不准时，保持两条记录独立，不要合并

请分析以下两条 {item_type} 记录并给出处理方式：

## 新记录
{_dump(new_item)}

## 已有记录
{_dump(existing_item)}

## 输出格式
严格返回如下 JSON：
{{
  "action": "merge|discard|keep_distinct",
  "reason": "决策理由",
  "confidence": 0.0-1.0,
  "mergedData": {{ /* 仅当 action 为 merge 时提供 */ }}
}}
"""
        guidance = _MERGE_GUIDANCE.get(item_type)
        if guidance:
            prompt += "\n" + guidance
        return prompt

    def build_synthesis_prompt(
        self,
        category: str,
        entity_name: str,
        records: List[Dict[str, Any]],
    ) -> str:
        """构建知识合成提示词"""
        instruction = _SYNTHESIS_INSTRUCTIONS.get(category, _GENERIC_SYNTHESIS_INSTRUCTION)

        blocks = []
        for index, record in enumerate(records, start=1):
            chapters = record.get("source_chapter_ids") or ["未知"]
            blocks.append(
                f"--- 记录 {index}（来自章节 {chapters[0]}）---\n"
                f"名称：{record.get('name')}\n"
                f"描述：{record.get('description') or ''}\n"
                f"子类别：{record.get('subcategory') or ''}\n"
                f"证据：{record.get('evidence') or ''}\n"
                f"详情：{_dump(record.get('details') or {})}\n"
                f"置信度：{record.get('confidence_score')}"
            )

        return f"""{instruction}

实体名称：{entity_name}
类别：{category}

## 待合成的来源记录

{chr(10).join(blocks)}

## 要求
1. 整合所有独有信息，不重复
2. 保留每条来源记录中的重要细节
3. 存在冲突时，说明差异或其在章节间的演变
4. 合并所有证据，保持可追溯
5. 只返回包含以下字段的 JSON 对象：
   - description：综合描述
   - subcategory：最合适的子类别
   - evidence：合并后的证据
   - details：合并后的详情对象
   - reasoning：合成思路简述
   - conflicts_resolved：发现的冲突及处理方式（数组）

只返回合法 JSON："""


__all__ = [
    "PromptBuilder",
]
