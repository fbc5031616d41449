"""
话语标记检测

识别 "meanwhile"、"three days later"、"however" 等衔接词，
用于判断相邻句子之间是否存在场景或叙事上的断点。
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Pattern, Sequence, Tuple

STRONG = "strong"
MEDIUM = "medium"
WEAK = "weak"

# 强度 -> 类型 -> 短语
DISCOURSE_MARKERS: Dict[str, Dict[str, Tuple[str, ...]]] = {
    STRONG: {
        "temporal": (
            "meanwhile", "later", "afterwards", "subsequently", "eventually", "finally",
            "three days later", "the next morning", "several weeks later", "months later",
            "years later", "the following day", "that evening", "by nightfall",
        ),
        "narrative": (
            "chapter", "part", "section", "book", "epilogue", "prologue",
            "meanwhile", "elsewhere", "back at", "at the same time",
        ),
        "causal": (
            "therefore", "consequently", "as a result", "thus", "hence", "accordingly",
        ),
    },
    MEDIUM: {
        "temporal": (
            "then", "next", "soon", "shortly", "immediately", "suddenly",
            "before", "after", "during", "while", "when", "until",
        ),
        "contrast": (
            "however", "nevertheless", "nonetheless", "on the other hand",
            "in contrast", "conversely", "alternatively", "instead",
        ),
        "addition": (
            "furthermore", "moreover", "additionally", "besides", "also",
            "in addition", "what is more", "not only",
        ),
        "dialogue": (
            "he said", "she said", "they replied", "asked", "whispered",
            "shouted", "murmured", "exclaimed", "declared", "announced",
        ),
    },
    WEAK: {
        "temporal": ("now", "today", "yesterday", "tomorrow"),
        "addition": ("and", "or", "but", "so"),
        "contrast": ("yet", "still", "though", "although"),
        "causal": ("because", "since", "for", "as"),
    },
}

_BASE_SCORES = {STRONG: 8, MEDIUM: 4, WEAK: 1}
MAX_MARKER_SCORE = 10


@dataclass(frozen=True)
class DiscourseMarker:
    text: str
    type: str
    strength: str
    position: int
    score: int


def _compile_lexicon() -> List[Tuple[str, str, str, Pattern]]:
    compiled = []
    for strength, categories in DISCOURSE_MARKERS.items():
        for marker_type, phrases in categories.items():
            for phrase in phrases:
                pattern = re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", re.IGNORECASE)
                compiled.append((strength, marker_type, phrase, pattern))
    return compiled


_LEXICON = _compile_lexicon()


def marker_score(strength: str, marker_type: str, phrase: str) -> int:
    """强 8 / 中 4 / 弱 1，含 later 的时间短语 +2，chapter 叙事标记 +3，对话标记 +1，封顶 10"""
    score = _BASE_SCORES[strength]
    if marker_type == "temporal" and "later" in phrase:
        score += 2
    if marker_type == "narrative" and "chapter" in phrase:
        score += 3
    if marker_type == "dialogue":
        score += 1
    return min(score, MAX_MARKER_SCORE)


def detect_markers(text: str) -> List[DiscourseMarker]:
    """检测文本中的话语标记，按出现位置排序"""
    if not text:
        return []
    markers: List[DiscourseMarker] = []
    for strength, marker_type, phrase, pattern in _LEXICON:
        for match in pattern.finditer(text):
            markers.append(DiscourseMarker(
                text=phrase,
                type=marker_type,
                strength=strength,
                position=match.start(),
                score=marker_score(strength, marker_type, phrase),
            ))
    markers.sort(key=lambda marker: (marker.position, -marker.score))
    return markers


def max_marker_score(markers: Sequence[DiscourseMarker]) -> int:
    return max((marker.score for marker in markers), default=0)


def analyze_flow(
    previous: Sequence[DiscourseMarker],
    current: Sequence[DiscourseMarker],
) -> int:
    """
    相邻片段之间的叙事衔接断裂程度

    强时间标记每个 5 分，叙事标记每个 6 分，转折标记每个 2 分，封顶 10。
    previous 目前不参与计分，保留参数以便比较上下文。
    """
    score = 0
    score += 5 * sum(1 for m in current if m.strength == STRONG and m.type == "temporal")
    score += 6 * sum(1 for m in current if m.type == "narrative")
    score += 2 * sum(1 for m in current if m.type == "contrast")
    return min(score, MAX_MARKER_SCORE)


def temporal_markers(markers: Sequence[DiscourseMarker]) -> List[DiscourseMarker]:
    return [marker for marker in markers if marker.type == "temporal"]


def indicates_scene_break(markers: Sequence[DiscourseMarker]) -> bool:
    """存在强标记或叙事标记即视为场景切换"""
    strong = [m for m in markers if m.strength == STRONG]
    narrative = [m for m in markers if m.type == "narrative"]
    strong_temporal = [m for m in strong if m.type == "temporal"]
    return bool(strong) or bool(narrative) or len(strong_temporal) > 1


__all__ = [
    "DiscourseMarker",
    "DISCOURSE_MARKERS",
    "detect_markers",
    "marker_score",
    "max_marker_score",
    "analyze_flow",
    "temporal_markers",
    "indicates_scene_break",
]
