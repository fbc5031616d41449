"""
对白分析

检测引号对白与说话标签，识别说话人，并给出叙述/对白切换的断点分。
"""

import re
from dataclasses import dataclass
from typing import Dict, List

_QUOTE_PATTERNS = (
    re.compile(r'"([^"]+)"'),
    re.compile(r"“([^”]+)”"),
    re.compile(r"「([^」]+)」"),
    re.compile(r"«([^»]+)»"),
    re.compile(r"(?<!\w)'([^']+)'(?!\w)"),
)

_SPEECH_VERBS = r"(?:said|asked|replied|whispered|shouted|exclaimed|murmured|declared|announced)"

_SPEECH_TAGS = (
    re.compile(r"\b(?:he|she|they|[A-Z][a-z]+)\s+" + _SPEECH_VERBS + r"\b", re.IGNORECASE),
    re.compile(r"\b" + _SPEECH_VERBS + r"\s+(?:he|she|they|[A-Z][a-z]+)\b", re.IGNORECASE),
)

# 说话人名字必须大写开头，这里不使用 IGNORECASE
_SPEAKER_PATTERNS = (
    re.compile(r"\b([A-Z][a-z]+)\s+" + _SPEECH_VERBS + r"\b"),
    re.compile(r"\b" + _SPEECH_VERBS + r"\s+([A-Z][a-z]+)\b"),
)

_PRONOUNS = frozenset({"He", "She", "They", "It", "We", "You", "I"})


@dataclass
class DialogueSpeaker:
    name: str
    confidence: float
    utterances: int
    first_appearance: int
    last_appearance: int


@dataclass(frozen=True)
class DialogueSegment:
    text: str
    start: int
    end: int
    confidence: float = 0.9


def detect_dialogue(text: str) -> bool:
    """是否包含引号对白或说话标签"""
    if not text:
        return False
    return any(p.search(text) for p in _QUOTE_PATTERNS) or any(p.search(text) for p in _SPEECH_TAGS)


def extract_dialogue_segments(text: str) -> List[DialogueSegment]:
    segments: List[DialogueSegment] = []
    for pattern in _QUOTE_PATTERNS:
        for match in pattern.finditer(text or ""):
            segments.append(DialogueSegment(match.group(1), match.start(), match.end()))
    segments.sort(key=lambda segment: segment.start)
    return segments


def identify_speakers(text: str) -> List[DialogueSpeaker]:
    """按说话标签归属说话人，多次出现时置信度逐次 +0.1（封顶 1.0）"""
    speakers: Dict[str, DialogueSpeaker] = {}
    for pattern in _SPEAKER_PATTERNS:
        for match in pattern.finditer(text or ""):
            name = match.group(1)
            if len(name) < 2 or name in _PRONOUNS:
                continue
            existing = speakers.get(name)
            if existing:
                existing.utterances += 1
                existing.first_appearance = min(existing.first_appearance, match.start())
                existing.last_appearance = max(existing.last_appearance, match.start())
                existing.confidence = min(existing.confidence + 0.1, 1.0)
            else:
                speakers[name] = DialogueSpeaker(
                    name=name,
                    confidence=0.7,
                    utterances=1,
                    first_appearance=match.start(),
                    last_appearance=match.start(),
                )
    return sorted(speakers.values(), key=lambda s: (-s.confidence, s.first_appearance))


def dialogue_density(text: str) -> float:
    """对白字符数占全文的比例"""
    if not text:
        return 0.0
    spoken = sum(len(segment.text) for segment in extract_dialogue_segments(text))
    return min(spoken / max(len(text), 1), 1.0)


def transition_score(previous_text: str, current_text: str) -> int:
    """叙述与对白互相切换 +3，每个新出现的说话人 +2，封顶 10"""
    score = 0
    if detect_dialogue(previous_text) != detect_dialogue(current_text):
        score += 3

    previous_speakers = {s.name for s in identify_speakers(previous_text)}
    current_speakers = identify_speakers(current_text)
    if previous_speakers and current_speakers:
        score += 2 * sum(1 for s in current_speakers if s.name not in previous_speakers)
    return min(score, 10)


__all__ = [
    "DialogueSpeaker",
    "DialogueSegment",
    "detect_dialogue",
    "extract_dialogue_segments",
    "identify_speakers",
    "dialogue_density",
    "transition_score",
]
