"""
叙事语义分块模块

提供面向小说正文的分句、断点评分与分块能力。
"""

from .semantic_chunker import (
    Boundary,
    ChunkResult,
    NarrativeChunker,
    Sentence,
    chunk_stats,
    estimate_tokens,
    split_sentences,
)

__all__ = [
    "Boundary",
    "ChunkResult",
    "NarrativeChunker",
    "Sentence",
    "chunk_stats",
    "estimate_tokens",
    "split_sentences",
]
