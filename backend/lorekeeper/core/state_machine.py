"""
处理任务状态机

显式定义任务状态及合法转换，非法转换在服务边界直接拒绝。
"""

from enum import Enum
from typing import Dict, FrozenSet

from ..exceptions import InvalidStateTransitionError


class JobState(str, Enum):
    """分析任务状态"""
    PENDING = "pending"          # 已创建，尚未开始
    THINKING = "thinking"        # 规划：缺口检测、变更检测
    ANALYZING = "analyzing"      # 分块、向量化、相似度评估
    EXTRACTING = "extracting"    # 抽取、去重、时间线、合成
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.DONE, JobState.FAILED})

# 只允许单调前进；取消由 JobManager.cancel 强制进入 failed
JOB_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.THINKING, JobState.FAILED}),
    JobState.THINKING: frozenset({JobState.ANALYZING, JobState.EXTRACTING, JobState.DONE, JobState.FAILED}),
    JobState.ANALYZING: frozenset({JobState.EXTRACTING, JobState.DONE, JobState.FAILED}),
    JobState.EXTRACTING: frozenset({JobState.DONE, JobState.FAILED}),
    JobState.DONE: frozenset(),
    JobState.FAILED: frozenset(),
}


def is_terminal(state: str) -> bool:
    return JobState(state) in TERMINAL_STATES


def can_transition(current: str, target: str) -> bool:
    return JobState(target) in JOB_TRANSITIONS[JobState(current)]


def validate_transition(current: str, target: str) -> JobState:
    """
    校验状态转换

    Raises:
        InvalidStateTransitionError: 转换不在转换表中
    """
    current_state = JobState(current)
    target_state = JobState(target)
    allowed = JOB_TRANSITIONS[current_state]
    if target_state not in allowed:
        raise InvalidStateTransitionError(
            current_state.value,
            target_state.value,
            ", ".join(sorted(state.value for state in allowed)),
        )
    return target_state
