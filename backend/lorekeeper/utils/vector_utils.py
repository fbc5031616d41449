"""向量运算工具"""

from typing import Sequence

import numpy as np

from ..exceptions import InvalidParameterError


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    余弦相似度，结果位于 [-1, 1]

    任一向量为零向量时返回 0。

    Raises:
        InvalidParameterError: 维度不一致
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise InvalidParameterError(
            f"向量维度不一致: {va.shape[0] if va.ndim else 0} vs {vb.shape[0] if vb.ndim else 0}",
            parameter="vector",
        )
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    value = float(np.dot(va, vb) / (norm_a * norm_b))
    return max(-1.0, min(1.0, value))
