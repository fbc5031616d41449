"""
统一异常体系

提供知识抽取流水线的异常定义，避免在服务层直接使用HTTPException。
所有异常都会被全局异常处理器捕获并转换为HTTP响应。
"""

from typing import Optional


class LorekeeperError(Exception):
    """
    基础异常类

    所有业务异常的基类，会被全局异常处理器捕获。

    Attributes:
        message: 错误消息（面向用户）
        status_code: HTTP状态码
        detail: 详细错误信息（可选，用于日志）
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        detail: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.detail = detail or message
        super().__init__(self.message)


# ==================== 4xx 客户端错误 ====================


class ResourceNotFoundError(LorekeeperError):
    """资源不存在（404）"""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource}不存在",
            status_code=404,
            detail=f"{resource}不存在: {identifier}"
        )


class InvalidParameterError(LorekeeperError):
    """参数错误（400）"""

    def __init__(self, message: str, parameter: Optional[str] = None):
        detail = f"参数错误: {parameter} - {message}" if parameter else message
        super().__init__(
            message=message,
            status_code=400,
            detail=detail
        )


class InvalidStateTransitionError(LorekeeperError):
    """非法状态转换（400）

    支持两种调用方式:
    1. InvalidStateTransitionError(message) - 简单消息
    2. InvalidStateTransitionError(current, target, allowed) - 详细状态转换信息
    """

    def __init__(
        self,
        current_state: str,
        target_state: Optional[str] = None,
        allowed: Optional[str] = None
    ):
        if target_state is None:
            message = current_state
            detail = current_state
        else:
            message = f"非法的状态转换: {current_state} → {target_state}"
            detail = f"{message}. 当前状态只能转换到: {allowed or '无'}"
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            message=message,
            status_code=400,
            detail=detail
        )


class ConflictError(LorekeeperError):
    """资源冲突（409）"""

    def __init__(self, message: str):
        super().__init__(message=message, status_code=409)


class ManualResolutionRequired(LorekeeperError):
    """用户编辑过的条目与自动合并冲突，需要人工处理（409）"""

    def __init__(self, item_type: str, existing_id: str):
        self.item_type = item_type
        self.existing_id = existing_id
        super().__init__(
            message="该条目已被用户编辑，需要人工确认合并",
            status_code=409,
            detail=f"{item_type} {existing_id} 已被用户编辑，自动合并被拒绝"
        )


class AnalysisCancelledError(LorekeeperError):
    """分析任务被取消（400）"""

    def __init__(self, task_name: str, task_id: Optional[str] = None):
        detail = f"{task_name}（{task_id}）已被取消" if task_id else f"{task_name}已被取消"
        super().__init__(
            message=f"{task_name}已取消",
            status_code=400,
            detail=detail
        )


# ==================== 5xx 服务端错误 ====================


class LLMServiceError(LorekeeperError):
    """LLM服务错误（503）"""

    def __init__(self, message: str, provider: Optional[str] = None):
        detail = f"LLM服务错误 [{provider}]: {message}" if provider else f"LLM服务错误: {message}"
        self.reason = message
        super().__init__(
            message="AI服务暂时不可用，请稍后重试",
            status_code=503,
            detail=detail
        )


class LLMConfigurationError(LorekeeperError):
    """LLM配置错误（500）"""

    def __init__(self, message: str):
        super().__init__(
            message="LLM配置错误",
            status_code=500,
            detail=message
        )


class EmbeddingServiceError(LorekeeperError):
    """嵌入服务错误（503）"""

    def __init__(self, message: str):
        super().__init__(
            message="向量化服务暂时不可用",
            status_code=503,
            detail=f"嵌入服务错误: {message}"
        )


class JSONParseError(LorekeeperError):
    """JSON解析错误（500）"""

    def __init__(self, context: str, detail_msg: Optional[str] = None):
        message = f"{context}: 格式错误"
        detail = f"JSON解析失败: {context}"
        if detail_msg:
            detail = f"{detail} - {detail_msg}"
        super().__init__(
            message=message,
            status_code=500,
            detail=detail
        )
