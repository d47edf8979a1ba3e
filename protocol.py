"""
protocol.py - OpenAI 兼容协议转换

职责：
- 消息验证与拍平（多轮对话 -> 单个查询文本）
- 非流式响应体（附引用来源）
- SSE 流式分块
- 错误响应体
"""

import json
import time
import uuid
import threading
from typing import Any, Dict, List, Optional, Sequence

from data_models import AnswerResult, Citation, CompletionStatus


MAX_MESSAGES_COUNT = 100
MAX_MESSAGE_LENGTH = 100000


# ================= 错误 =================

class InvalidRequestError(Exception):
    """请求校验失败（HTTP 400）"""

    def __init__(self, message: str, code: str, param: Optional[str] = "messages"):
        super().__init__(message)
        self.message = message
        self.code = code
        self.param = param


def error_body(message: str, error_type: str = "invalid_request_error",
               code: str = None, param: str = None) -> Dict[str, Any]:
    return {
        "error": {
            "message": message,
            "type": error_type,
            "param": param,
            "code": code,
        }
    }


# ================= 消息处理 =================

class MessageValidator:
    """消息验证器"""

    VALID_ROLES = {'user', 'assistant', 'system'}

    @staticmethod
    def _content_text(content: Any) -> str:
        # 兼容 [{"type": "text", "text": ...}] 形式
        if isinstance(content, list):
            parts = []
            for part in content:
                if isinstance(part, dict) and part.get('type', 'text') == 'text':
                    parts.append(str(part.get('text') or ''))
                elif isinstance(part, str):
                    parts.append(part)
            return "\n".join(parts)
        if content is None:
            return ''
        return content if isinstance(content, str) else str(content)

    @classmethod
    def validate(cls, messages: Any) -> List[Dict[str, str]]:
        if not isinstance(messages, list) or len(messages) == 0:
            raise InvalidRequestError(
                "messages is required and must be a non-empty array", "invalid_messages"
            )

        if len(messages) > MAX_MESSAGES_COUNT:
            raise InvalidRequestError(
                f"too many messages (max {MAX_MESSAGES_COUNT})", "invalid_messages"
            )

        sanitized = []
        for i, msg in enumerate(messages):
            if not isinstance(msg, dict):
                raise InvalidRequestError(f"messages[{i}] must be an object", "invalid_messages")

            role = msg.get('role', 'user')
            if role not in cls.VALID_ROLES:
                role = 'user'

            content = cls._content_text(msg.get('content'))
            if len(content) > MAX_MESSAGE_LENGTH:
                raise InvalidRequestError(
                    f"messages[{i}].content exceeds {MAX_MESSAGE_LENGTH} characters", "invalid_messages"
                )

            sanitized.append({'role': role, 'content': content})

        return sanitized


def flatten_messages(messages: Sequence[Dict[str, str]]) -> str:
    """多轮对话拍平成一个查询文本"""
    parts = []
    for msg in messages:
        role, content = msg['role'], msg['content']
        if role == 'system':
            parts.append(f"[System: {content}]")
        elif role == 'assistant':
            parts.append(f"[Previous answer: {content}]")
        else:
            parts.append(content)

    query = "\n\n".join(parts)
    if not query.strip():
        raise InvalidRequestError("No content found in messages", "empty_content")
    return query


# ================= 响应体 =================

class _IdGenerator:
    _sequence = 0
    _lock = threading.Lock()

    @classmethod
    def next(cls) -> str:
        with cls._lock:
            cls._sequence += 1
            seq = cls._sequence
        return f"chatcmpl-{int(time.time() * 1000)}-{seq}-{uuid.uuid4().hex[:6]}"


def format_sources(citations: Sequence[Citation]) -> str:
    if not citations:
        return ""

    lines = ["\n\n---\n**Sources:**\n"]
    for i, citation in enumerate(citations, 1):
        lines.append(f"{i}. [{citation.title}]({citation.url})\n")
    return "".join(lines)


def finish_reason_for(result: AnswerResult) -> str:
    return "stop" if result.completion is CompletionStatus.CONVERGED else "length"


def build_completion_response(result: AnswerResult, model: str) -> Dict[str, Any]:
    """非流式响应（引用来源以尾注形式附在正文后）"""
    return {
        "id": _IdGenerator.next(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [{
            "index": 0,
            "message": {
                "role": "assistant",
                "content": result.answer_text + format_sources(result.citations),
            },
            "finish_reason": finish_reason_for(result),
        }],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


class SSEFormatter:
    """SSE 响应格式化器"""

    @staticmethod
    def _event(data: Any) -> str:
        return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"

    @classmethod
    def _chunk(cls, model: str, delta: Dict[str, Any], finish_reason: str = None) -> str:
        return cls._event({
            "id": _IdGenerator.next(),
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": model,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }],
        })

    @classmethod
    def pack_role(cls, model: str) -> str:
        return cls._chunk(model, {"role": "assistant", "content": ""})

    @classmethod
    def pack_chunk(cls, content: str, model: str) -> str:
        return cls._chunk(model, {"content": content})

    @classmethod
    def pack_finish(cls, model: str, finish_reason: str = "stop") -> str:
        return cls._chunk(model, {}, finish_reason) + "data: [DONE]\n\n"

    @classmethod
    def pack_error(cls, message: str, model: str) -> str:
        """流已开始后的失败：错误文本作为最后一段内容，随后结束"""
        return (cls._chunk(model, {"content": f"\n\n[Error: {message}]"})
                + cls._chunk(model, {}, "stop")
                + "data: [DONE]\n\n")
