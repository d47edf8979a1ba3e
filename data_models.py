"""
data_models.py - 数据模型

职责：
- 观测样本 / 答案结果等引擎内部值类型
- 后端配置表结构（TypedDict）
- HTTP 请求模型（pydantic）
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, TypedDict

from pydantic import BaseModel, Field


# ================= 引擎值类型 =================

@dataclass(frozen=True)
class ObservationSample:
    """某一时刻对页面的读取结果"""
    text: str = ""
    busy: bool = False
    # 站点已渲染出最终答案容器（如 gemini 的 model-response）
    settled: bool = False


@dataclass(frozen=True)
class Citation:
    title: str
    url: str
    isolated_context: bool

    def to_dict(self) -> dict:
        return {"title": self.title, "url": self.url}


class CompletionStatus(str, Enum):
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class AnswerResult:
    """终态输出"""
    answer_text: str
    citations: tuple = ()
    completion: CompletionStatus = CompletionStatus.CONVERGED
    backend: str = ""
    elapsed: float = 0.0

    @property
    def converged(self) -> bool:
        return self.completion is CompletionStatus.CONVERGED


@dataclass
class ConvergenceState:
    """检测器单次执行的工作状态"""
    start_time: float
    last_text: str = ""
    stable_count: int = 0
    last_emitted_length: int = 0
    polls: int = 0


# ================= 后端配置表 =================

class AnswerRegion(TypedDict, total=False):
    selector: str
    # join: 拼接所有匹配节点；last: 取最后一个；longest: 取最长的一个
    mode: str
    tier: int
    min_chars: int
    exclude_within: List[str]
    # 替换后端默认的 strip_selectors
    strip: List[str]


class BackendProfile(TypedDict, total=False):
    name: str
    owned_by: str
    url: str
    isolated_context: bool
    deadline: float
    low_threshold: int
    high_threshold: int
    settled_threshold: int
    min_answer_chars: int
    input_selectors: List[str]
    require_opaque: bool
    send_selectors: List[str]
    send_label_keywords: List[str]
    dismiss_selectors: List[str]
    answer_regions: List[AnswerRegion]
    strip_selectors: List[str]
    busy_selectors: List[str]
    settled_selectors: List[str]
    citation_selector: Optional[str]
    citation_url_attr: Optional[str]
    citation_exclude_hosts: List[str]


# ================= HTTP 请求模型 =================

class ChatCompletionRequest(BaseModel):
    model: Optional[str] = Field(default=None)
    messages: Optional[list] = Field(default=None)
    stream: Optional[bool] = Field(default=False)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1)


class ModelInfo(BaseModel):
    id: str
    object: str = "model"
    created: int = Field(default_factory=lambda: int(time.time()))
    owned_by: str
    permission: list = Field(default_factory=list)
    root: Optional[str] = None
    parent: Optional[str] = None


class ModelsResponse(BaseModel):
    object: str = "list"
    data: List[ModelInfo] = Field(default_factory=list)
