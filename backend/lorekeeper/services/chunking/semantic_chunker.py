"""
叙事语义分块

面向小说正文的分块算法：
1. 引号感知的分句，保留每句在原文中的字符区间
2. 逐句计算断点分：话语标记 / 实体切换 / 对白切换按 3:2:1 加权，归一到 0-10
3. 可选：候选句与上一个候选断点句的嵌入相似度下降时追加分值
4. 顺序扫描产生候选断点（超出 max_tokens 的强制断点、≥8 的强断点、累计分达到 8 的普通断点）
5. 按分值贪心筛选，保证断点两侧都不少于 min_tokens，再按位置排序
6. 生成带重叠句的分块及其语言学元数据
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ...core.pipeline_config import ChunkingConfig
from ...utils.vector_utils import cosine_similarity
from . import dialogue_analysis, discourse_markers, entity_shift

logger = logging.getLogger(__name__)

EmbedFunc = Callable[[str], Awaitable[Sequence[float]]]

_TERMINATORS = frozenset(".!?。！？…")
_ASCII_TERMINATORS = frozenset(".!?…")
_TRAILING_CLOSERS = frozenset(")]’'")
_CLOSING_QUOTES = frozenset('"”」』')
_OPENING_QUOTES = frozenset('"“「『')

# 句点后不断句的常见缩写（小写、不含末尾句点）
ABBREVIATIONS = frozenset({
    "mr", "mrs", "ms", "dr", "st", "jr", "sr", "prof", "vs", "e.g", "i.e",
    "mt", "capt", "gen", "lt", "col", "sgt", "rev", "hon", "fig", "approx",
})

_WORD_BEFORE = re.compile(r"([A-Za-z][A-Za-z.]*)$")
_WORD_PATTERN = re.compile(r"[一-鿿぀-ヿ]|[^\s一-鿿぀-ヿ]+")
_CJK = re.compile(r"[一-鿿぀-ヿ]")


@dataclass(frozen=True)
class Sentence:
    """句子及其在原文中的区间 [start, end)"""

    text: str
    start: int
    end: int


@dataclass
class Boundary:
    """断点：sentence_index 为新分块的第一句"""

    sentence_index: int
    score: float
    hard: bool = False
    reasons: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ChunkResult:
    """分块结果"""

    index: int
    content: str
    start_position: int
    end_position: int
    start_sentence: int             # 含重叠句的起始句下标
    end_sentence: int               # 结束句下标（不包含）
    overlap_sentences: int
    token_count: int
    content_hash: str
    named_entities: List[str] = field(default_factory=list)
    entity_types: List[str] = field(default_factory=list)
    discourse_markers: List[Dict[str, Any]] = field(default_factory=list)
    dialogue_present: bool = False
    dialogue_speakers: List[str] = field(default_factory=list)
    breakpoint_score: float = 0.0
    breakpoint_reasons: List[Dict[str, Any]] = field(default_factory=list)


def estimate_tokens(text: str, tokens_per_word: float = 1.3) -> float:
    """词数 × 1.3，中日文按单字计词"""
    return len(_WORD_PATTERN.findall(text or "")) * tokens_per_word


def _is_abbreviation(text: str, index: int) -> bool:
    match = _WORD_BEFORE.search(text[max(0, index - 12):index])
    if not match:
        return False
    word = match.group(1)
    if len(word) == 1 and word.isupper():
        return True  # 姓名首字母，如 "J. Smith"
    return word.lower().rstrip(".") in ABBREVIATIONS


def split_sentences(text: str) -> List[Sentence]:
    """
    引号感知的分句

    - 句末标点：. ! ? 。！？ …（英文标点后须为空白或文本结尾）
    - 位于 "..."、“...”、「...」 内部的标点不断句；引号闭合且其前为句末标点时，
      若后面是大写字母、新的引号、中文或段落结尾则在引号后断句
    - 空行总是结束当前句子，并重置引号状态
    """
    sentences: List[Sentence] = []
    if not text or not text.strip():
        return sentences

    n = len(text)
    start = 0

    def flush(end: int) -> None:
        segment = text[start:end]
        stripped = segment.strip()
        if stripped:
            offset = start + (len(segment) - len(segment.lstrip()))
            sentences.append(Sentence(stripped, offset, offset + len(stripped)))

    ascii_open = False
    curly_depth = 0
    corner_depth = 0
    i = 0
    while i < n:
        char = text[i]

        if char == "\n":
            j = i + 1
            while j < n and text[j] in " \t\r":
                j += 1
            if j < n and text[j] == "\n":
                flush(i)
                while j < n and text[j].isspace():
                    j += 1
                start = i = j
                ascii_open = False
                curly_depth = corner_depth = 0
                continue

        closed_now = False
        if char == '"':
            ascii_open = not ascii_open
            closed_now = not ascii_open
        elif char == "“":
            curly_depth += 1
        elif char == "”":
            curly_depth = max(0, curly_depth - 1)
            closed_now = curly_depth == 0
        elif char in "「『":
            corner_depth += 1
        elif char in "」』":
            corner_depth = max(0, corner_depth - 1)
            closed_now = corner_depth == 0

        in_quote = ascii_open or curly_depth > 0 or corner_depth > 0

        if char in _TERMINATORS and not in_quote:
            if char == "." and _is_abbreviation(text, i):
                i += 1
                continue
            j = i + 1
            while j < n and (text[j] in _TERMINATORS or text[j] in _TRAILING_CLOSERS):
                j += 1
            if char in _ASCII_TERMINATORS and j < n and not text[j].isspace() and not _CJK.match(text[j]):
                i = j
                continue
            flush(j)
            start = i = j
            continue

        if closed_now and not in_quote and char in _CLOSING_QUOTES and i > 0 and text[i - 1] in _TERMINATORS:
            k = i + 1
            while k < n and text[k] in " \t":
                k += 1
            if k >= n or text[k] in "\r\n" or text[k].isupper() or text[k] in _OPENING_QUOTES or _CJK.match(text[k]):
                flush(i + 1)
                start = i = i + 1
                continue

        i += 1

    flush(n)
    return sentences


class NarrativeChunker:
    """
    叙事分块器

    断点判定只依赖规则信号；提供 embed_fn 时额外利用句子嵌入的相似度下降。
    """

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    async def chunk(self, text: str, embed_fn: Optional[EmbedFunc] = None) -> List[ChunkResult]:
        """
        分块文本

        Args:
            text: 章节正文
            embed_fn: 异步嵌入函数（可选），输入句子返回向量

        Returns:
            分块结果列表；空文本返回空列表
        """
        sentences = split_sentences(text)
        if not sentences:
            return []

        signals = self._rule_signals(sentences)
        if embed_fn is not None:
            await self._apply_embedding_drop(sentences, signals, embed_fn)
        return self._assemble(text, sentences, signals)

    def chunk_sync(self, text: str) -> List[ChunkResult]:
        """同步分块（仅规则信号）"""
        sentences = split_sentences(text)
        if not sentences:
            return []
        return self._assemble(text, sentences, self._rule_signals(sentences))

    # ------------------------------------------------------------------
    # 断点信号
    # ------------------------------------------------------------------
    def _rule_signals(self, sentences: List[Sentence]) -> List[Dict[str, Any]]:
        cfg = self.config
        total_weight = cfg.discourse_marker_weight + cfg.ner_shift_weight + cfg.dialogue_shift_weight

        markers = [discourse_markers.detect_markers(s.text) for s in sentences]
        entities = [entity_shift.extract_entities(s.text) for s in sentences]

        signals: List[Dict[str, Any]] = [{"score": 0.0, "reasons": []}]
        for k in range(1, len(sentences)):
            marker = max(
                discourse_markers.max_marker_score(markers[k]),
                discourse_markers.analyze_flow(markers[k - 1], markers[k]),
            )
            shift = entity_shift.calculate_shift(entities[k - 1], entities[k]).score * 10
            dialogue = dialogue_analysis.transition_score(sentences[k - 1].text, sentences[k].text)

            score = (
                cfg.discourse_marker_weight * marker
                + cfg.ner_shift_weight * shift
                + cfg.dialogue_shift_weight * dialogue
            ) / total_weight
            score = min(score, cfg.max_score)

            reasons = []
            if marker:
                reasons.append({"type": "discourse_marker", "score": round(marker, 2)})
            if shift:
                reasons.append({"type": "entity_shift", "score": round(shift, 2)})
            if dialogue:
                reasons.append({"type": "dialogue_transition", "score": round(dialogue, 2)})
            signals.append({"score": score, "reasons": reasons})
        return signals

    async def _apply_embedding_drop(
        self,
        sentences: List[Sentence],
        signals: List[Dict[str, Any]],
        embed_fn: EmbedFunc,
    ) -> None:
        """对达到候选分的句子，与上一个候选句比较嵌入相似度"""
        cfg = self.config
        cache: Dict[int, Sequence[float]] = {}

        async def vector(index: int) -> Sequence[float]:
            if index not in cache:
                cache[index] = await embed_fn(sentences[index].text)
            return cache[index]

        anchor = 0
        for k in range(1, len(sentences)):
            if signals[k]["score"] < cfg.eligible_cut:
                continue
            try:
                similarity = cosine_similarity(await vector(anchor), await vector(k))
            except Exception as exc:
                logger.warning("句子嵌入比较失败，忽略该信号: sentence=%d error=%s", k, exc)
                anchor = k
                continue
            if similarity < cfg.embedding_threshold:
                drop = (cfg.embedding_threshold - similarity) / cfg.embedding_threshold * cfg.embedding_drop_weight
                signals[k]["score"] = min(signals[k]["score"] + drop, cfg.max_score)
                signals[k]["reasons"].append({"type": "embedding_drop", "score": round(drop, 2)})
            anchor = k

    # ------------------------------------------------------------------
    # 断点选择与分块生成
    # ------------------------------------------------------------------
    def _candidate_boundaries(
        self,
        tokens: List[float],
        signals: List[Dict[str, Any]],
    ) -> List[Boundary]:
        cfg = self.config
        candidates: List[Boundary] = []
        running_tokens = tokens[0]
        running_score = 0.0

        for k in range(1, len(tokens)):
            score = signals[k]["score"]
            reasons = signals[k]["reasons"]

            if running_tokens + tokens[k] > cfg.max_tokens:
                candidates.append(Boundary(k, score, hard=True, reasons=reasons + [{"type": "max_tokens"}]))
                running_tokens = tokens[k]
                running_score = 0.0
                continue

            running_tokens += tokens[k]
            running_score += score

            if score >= cfg.force_cut:
                candidates.append(Boundary(k, score, reasons=list(reasons)))
                running_score = 0.0
            elif score >= cfg.eligible_cut and running_score >= cfg.force_cut:
                candidates.append(Boundary(k, score, reasons=list(reasons)))
                running_score = 0.0

        return candidates

    def _select_boundaries(self, tokens: List[float], candidates: List[Boundary]) -> List[Boundary]:
        """强制断点全部保留；其余按分值从高到低贪心接受，要求两侧都不少于 min_tokens"""
        prefix = [0.0]
        for value in tokens:
            prefix.append(prefix[-1] + value)
        n = len(tokens)

        accepted = {b.sentence_index: b for b in candidates if b.hard}
        soft = sorted(
            (b for b in candidates if not b.hard),
            key=lambda b: (-b.score, b.sentence_index),
        )
        for boundary in soft:
            positions = sorted(set(accepted) | {0, n})
            left = max(p for p in positions if p < boundary.sentence_index)
            right = min(p for p in positions if p > boundary.sentence_index)
            left_tokens = prefix[boundary.sentence_index] - prefix[left]
            right_tokens = prefix[right] - prefix[boundary.sentence_index]
            if left_tokens >= self.config.min_tokens and right_tokens >= self.config.min_tokens:
                accepted[boundary.sentence_index] = boundary

        return [accepted[index] for index in sorted(accepted)]

    def _assemble(
        self,
        text: str,
        sentences: List[Sentence],
        signals: List[Dict[str, Any]],
    ) -> List[ChunkResult]:
        cfg = self.config
        tokens = [estimate_tokens(s.text, cfg.tokens_per_word) for s in sentences]
        boundaries = self._select_boundaries(tokens, self._candidate_boundaries(tokens, signals))

        opening = Boundary(0, 0.0, reasons=[{"type": "chapter_start"}])
        segments = [opening] + boundaries
        ends = [b.sentence_index for b in boundaries] + [len(sentences)]

        chunks: List[ChunkResult] = []
        for index, (boundary, end) in enumerate(zip(segments, ends)):
            core_start = boundary.sentence_index
            start = core_start if index == 0 else max(0, core_start - cfg.overlap_sentences)
            start_pos = sentences[start].start
            end_pos = sentences[end - 1].end
            content = text[start_pos:end_pos]

            entities = entity_shift.extract_entities(content)
            markers = discourse_markers.detect_markers(content)
            speakers = dialogue_analysis.identify_speakers(content)

            chunks.append(ChunkResult(
                index=index,
                content=content,
                start_position=start_pos,
                end_position=end_pos,
                start_sentence=start,
                end_sentence=end,
                overlap_sentences=core_start - start,
                token_count=round(sum(tokens[start:end])),
                content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
                named_entities=entity_shift.entity_names(entities),
                entity_types=entity_shift.entity_types(entities),
                discourse_markers=[
                    {"text": m.text, "type": m.type, "strength": m.strength, "score": m.score}
                    for m in markers
                ],
                dialogue_present=dialogue_analysis.detect_dialogue(content),
                dialogue_speakers=[speaker.name for speaker in speakers],
                breakpoint_score=round(boundary.score, 3),
                breakpoint_reasons=boundary.reasons,
            ))

        logger.debug(
            "分块完成: sentences=%d chunks=%d hard=%d",
            len(sentences), len(chunks), sum(1 for b in boundaries if b.hard),
        )
        return chunks


def chunk_stats(chunks: Sequence[ChunkResult]) -> Dict[str, Any]:
    """分块统计：总 token、平均大小、重叠比例、断点原因分布"""
    if not chunks:
        return {"total_tokens": 0, "avg_chunk_size": 0, "overlap_ratio": 0.0, "breakpoint_distribution": {}}

    total_tokens = sum(chunk.token_count for chunk in chunks)
    overlapped = sum(1 for chunk in chunks if chunk.overlap_sentences > 0)
    distribution: Dict[str, int] = {}
    for chunk in chunks:
        for reason in chunk.breakpoint_reasons:
            distribution[reason["type"]] = distribution.get(reason["type"], 0) + 1

    return {
        "total_tokens": total_tokens,
        "avg_chunk_size": round(total_tokens / len(chunks)),
        "overlap_ratio": round(overlapped / len(chunks), 2),
        "breakpoint_distribution": distribution,
    }


__all__ = [
    "Sentence",
    "Boundary",
    "ChunkResult",
    "NarrativeChunker",
    "split_sentences",
    "estimate_tokens",
    "chunk_stats",
]
