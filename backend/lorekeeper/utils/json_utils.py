"""
模型响应 JSON 清洗与解析

补全服务的输出经常夹带 <think> 标签、Markdown 代码块、中文引号或被截断，
这里统一处理，调用方只需关心解析结果。
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import JSONParseError

logger = logging.getLogger(__name__)

_THINK_PATTERN = re.compile(r"<think>.*?</think>", re.DOTALL)
_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)


def remove_think_tags(raw_text: str) -> str:
    """移除 <think></think> 推理片段。"""
    if not raw_text:
        return raw_text
    return _THINK_PATTERN.sub("", raw_text).strip()


def unwrap_markdown_json(raw_text: str) -> str:
    """从 Markdown 或普通文本中截取最外层 JSON 片段。"""
    if not raw_text:
        return raw_text

    trimmed = raw_text.strip()

    fence_match = _FENCE_PATTERN.search(trimmed)
    if fence_match and fence_match.group(1).strip():
        return normalize_chinese_quotes(fence_match.group(1).strip())

    starts = [idx for idx in (trimmed.find("{"), trimmed.find("[")) if idx != -1]
    if starts:
        start_idx = min(starts)
        end_idx = max(trimmed.rfind("}"), trimmed.rfind("]"))
        if end_idx > start_idx:
            return normalize_chinese_quotes(trimmed[start_idx:end_idx + 1].strip())
        # 只有开头没有结尾，多半是被截断，保留到末尾交给修复逻辑
        return normalize_chinese_quotes(trimmed[start_idx:])

    return normalize_chinese_quotes(trimmed)


def normalize_chinese_quotes(text: str) -> str:
    """
    把字符串外部充当 JSON 定界符的中文双引号替换为英文引号

    字符串内部的中文引号（例如对白）保持原样。
    """
    if not text or ("“" not in text and "”" not in text):
        return text

    try:
        json.loads(text)
        return text
    except json.JSONDecodeError:
        pass

    result: List[str] = []
    in_string = False
    escape_next = False
    for char in text:
        if escape_next:
            result.append(char)
            escape_next = False
            continue
        if char == "\\":
            result.append(char)
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            result.append(char)
            continue
        if not in_string and char in "“”":
            result.append('"')
            continue
        result.append(char)
    return "".join(result)


def _scan_structure(text: str) -> Tuple[List[str], bool]:
    """返回未闭合的括号栈以及末尾是否仍在字符串内"""
    stack: List[str] = []
    in_str = False
    escape = False
    for char in text:
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_str = not in_str
            continue
        if in_str:
            continue
        if char == "{":
            stack.append("}")
        elif char == "[":
            stack.append("]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()
    return stack, in_str


def repair_truncated_json(text: str) -> str:
    """
    修复被截断的 JSON

    1. 末尾停在字符串中间时，回退到上一个完整元素边界；
    2. 去掉悬空的逗号和没有值的键；
    3. 补齐缺失的闭合括号。
    """
    if not text:
        return text

    text = text.rstrip()
    stack, in_string = _scan_structure(text)
    if not stack and not in_string:
        return text

    if in_string:
        cut = max(text.rfind(","), text.rfind("{"), text.rfind("["))
        # 回退点本身可能位于被截断的字符串里，继续向前找
        while cut > 0 and _scan_structure(text[:cut])[1]:
            cut = max(text.rfind(",", 0, cut), text.rfind("{", 0, cut), text.rfind("[", 0, cut))
        if cut <= 0:
            return text
        text = text[:cut + 1] if text[cut] in "{[" else text[:cut]
        logger.info("JSON修复: 回退到最近的完整元素边界")

    text = text.rstrip().rstrip(",").rstrip()
    if text.endswith(":"):
        boundary = max(text.rfind(","), text.rfind("{"))
        if boundary != -1:
            text = text[:boundary + 1] if text[boundary] == "{" else text[:boundary]
        text = text.rstrip().rstrip(",")

    stack, _ = _scan_structure(text)
    if stack:
        closing = "".join(reversed(stack))
        text += closing
        logger.info("JSON修复: 添加了闭合符号 '%s'", closing)
    return text


def parse_llm_json_or_fail(raw_text: str, error_context: str) -> Dict[str, Any]:
    """
    解析模型返回的 JSON，失败时抛出业务异常

    Raises:
        JSONParseError: 清洗与修复后仍无法解析
    """
    normalized = unwrap_markdown_json(remove_think_tags(raw_text or ""))
    try:
        return json.loads(normalized)
    except json.JSONDecodeError:
        pass

    try:
        result = json.loads(repair_truncated_json(normalized))
        logger.info("JSON修复成功(截断修复): %s", error_context)
        return result
    except json.JSONDecodeError as exc:
        preview = normalized[:500] + "..." if len(normalized) > 500 else normalized
        logger.error(
            "JSON解析失败: %s 错误=%s (行%d 列%d) 预览=%s",
            error_context,
            exc.msg,
            exc.lineno,
            exc.colno,
            preview,
        )
        stripped = normalized.strip()
        if stripped and not stripped.startswith(("{", "[")):
            detail_msg = "模型返回了普通文本而不是结构化数据"
        else:
            detail_msg = f"{exc.msg} (行{exc.lineno} 列{exc.colno})"
        raise JSONParseError(context=error_context, detail_msg=detail_msg) from exc


def parse_llm_json_safe(raw_text: Optional[str]) -> Optional[Any]:
    """
    安全解析模型返回的 JSON，失败返回 None（不抛异常）

    适用于逐条容错的场景，会自动尝试修复被截断的 JSON。
    """
    if not raw_text or not isinstance(raw_text, str):
        return None

    normalized = unwrap_markdown_json(remove_think_tags(raw_text))
    try:
        return json.loads(normalized)
    except json.JSONDecodeError as first_exc:
        try:
            repaired = repair_truncated_json(normalized)
            result = json.loads(repaired)
            logger.info("JSON修复成功，原长度: %d, 修复后长度: %d", len(normalized), len(repaired))
            return result
        except json.JSONDecodeError:
            logger.warning(
                "JSON解析失败（修复后仍失败）: %s, 位置: %d, 原文长度: %d",
                str(first_exc)[:100],
                first_exc.pos,
                len(raw_text),
            )
            return None
