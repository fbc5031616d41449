"""
基于规则的命名实体识别与实体切换度

不追求语言学上的准确，只用来感知相邻句子之间"出场人物/地点"是否发生明显变化。
"""

import re
from dataclasses import dataclass, field
from typing import List, Sequence

PERSON = "PERSON"
LOCATION = "LOCATION"

_CAPITALIZED = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?\b")
_LOCATION = re.compile(r"\b(?:in|at|to|from|near)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)")

# 句首常见大写虚词，不当作人名
STOP_WORDS = frozenset({
    "The", "This", "That", "These", "Those", "When", "Where", "What", "Who", "How", "Why",
    "He", "She", "It", "They", "We", "You", "His", "Her", "Their", "Our", "Its",
    "A", "An", "And", "But", "Or", "So", "If", "Then", "There", "Here",
    "Meanwhile", "Later", "After", "Before", "Chapter", "Part",
})


@dataclass(frozen=True)
class NamedEntity:
    text: str
    label: str
    confidence: float
    start: int
    end: int


@dataclass
class EntityShift:
    new_entities: List[NamedEntity] = field(default_factory=list)
    removed_entities: List[NamedEntity] = field(default_factory=list)
    score: float = 0.0


def extract_entities(text: str) -> List[NamedEntity]:
    """大写词（或相邻两个大写词）视为人物 0.6，介词后的大写短语视为地点 0.5"""
    if not text:
        return []

    entities: List[NamedEntity] = []
    for match in _CAPITALIZED.finditer(text):
        words = match.group(0).split()
        if words[0] in STOP_WORDS:
            words = words[1:]
        if not words:
            continue
        name = " ".join(words)
        start = match.end() - len(name)
        entities.append(NamedEntity(name, PERSON, 0.6, start, match.end()))

    for match in _LOCATION.finditer(text):
        name = match.group(1)
        entities.append(NamedEntity(name, LOCATION, 0.5, match.start(1), match.end(1)))

    entities.sort(key=lambda entity: (entity.start, entity.label))
    return entities


def entity_names(entities: Sequence[NamedEntity]) -> List[str]:
    """去重后的实体文本，保持出现顺序"""
    return list(dict.fromkeys(entity.text for entity in entities))


def entity_types(entities: Sequence[NamedEntity]) -> List[str]:
    return sorted({entity.label for entity in entities})


def calculate_shift(
    previous: Sequence[NamedEntity],
    current: Sequence[NamedEntity],
) -> EntityShift:
    """切换度 = (新增 + 消失) / max(前后实体总数, 1)，封顶 1"""
    previous_texts = {entity.text.lower() for entity in previous}
    current_texts = {entity.text.lower() for entity in current}

    new_entities = [e for e in current if e.text.lower() not in previous_texts]
    removed_entities = [e for e in previous if e.text.lower() not in current_texts]

    total = max(len(previous) + len(current), 1)
    score = min((len(new_entities) + len(removed_entities)) / total, 1.0)
    return EntityShift(new_entities=new_entities, removed_entities=removed_entities, score=score)


__all__ = [
    "NamedEntity",
    "EntityShift",
    "PERSON",
    "LOCATION",
    "extract_entities",
    "entity_names",
    "entity_types",
    "calculate_shift",
]
