"""
convergence.py - 答案收敛检测器

职责：
- 按固定间隔采样观测源
- 发现增长即推送增量（按已发送长度切片，不重复不遗漏）
- 在多个互相竞争的信号下判定"答案已完成"

状态机：
    WARMUP -> STREAMING -> STABLE | TIMEOUT_PARTIAL | TIMEOUT_EMPTY

判定规则：
1. 提前稳定：文本连续 low_threshold 次不变 且 busy=False
   （settled=True 时阈值降为 settled_threshold）
2. 强制稳定：文本连续 high_threshold 次不变，无视 busy
3. 截止时间到：有过文本则返回最后文本（部分答案），否则抛 NoAnswerError
"""

import time
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Optional

from browser_core import BrowserConstants, NoAnswerError, SecureLogger
from data_models import ObservationSample, ConvergenceState, CompletionStatus


logger = SecureLogger('convergence')


DeltaSink = Callable[[str], None]


class DetectorPhase(str, Enum):
    WARMUP = "warmup"
    STREAMING = "streaming"
    STABLE = "stable"
    TIMEOUT_PARTIAL = "timeout_partial"
    TIMEOUT_EMPTY = "timeout_empty"


@dataclass(frozen=True)
class DetectorOutcome:
    text: str
    completion: CompletionStatus
    polls: int
    elapsed: float


class ConvergenceDetector:
    """单次执行的收敛检测器（不可复用）"""

    def __init__(self, deadline: float,
                 low_threshold: int = 3,
                 high_threshold: int = 8,
                 settled_threshold: int = None,
                 warmup: float = None,
                 poll_interval: float = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 label: str = ""):
        if high_threshold < low_threshold:
            raise ValueError("high_threshold 不能小于 low_threshold")

        self.deadline = deadline
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.settled_threshold = settled_threshold if settled_threshold is not None else low_threshold
        self.warmup = BrowserConstants.get('STREAM_WARMUP') if warmup is None else warmup
        self.poll_interval = BrowserConstants.get('STREAM_POLL_INTERVAL') if poll_interval is None else poll_interval

        self._clock = clock
        self._sleep = sleep
        self._label = label

        self.phase = DetectorPhase.WARMUP
        self.state: Optional[ConvergenceState] = None
        self._used = False
        self._emitted = ""
        self._sink: Optional[DeltaSink] = None

    # ==================== 对外入口 ====================

    def run(self, observe: Callable[[], ObservationSample],
            on_delta: DeltaSink = None) -> DetectorOutcome:
        if self._used:
            raise RuntimeError("ConvergenceDetector 只能运行一次")
        self._used = True

        state = ConvergenceState(start_time=self._clock())
        self.state = state
        self._sink = on_delta
        deadline_at = state.start_time + self.deadline

        # ===== WARMUP：给页面开始渲染的时间 =====
        logger.debug(f"{self._label}[Warmup] 等待 {self.warmup}s")
        self._sleep(max(0.0, min(self.warmup, self.deadline)))

        # ===== STREAMING =====
        self.phase = DetectorPhase.STREAMING

        while self._clock() < deadline_at:
            sample = self._sample(observe)
            state.polls += 1

            final_text = self._consume(sample)
            if final_text is not None:
                return self._finish(DetectorPhase.STABLE, final_text)

            remaining = deadline_at - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(self.poll_interval, remaining))

        # ===== 截止时间到 =====
        if state.last_text:
            logger.warning(f"{self._label}[Timeout] 未能确认收敛，返回部分答案 ({len(state.last_text)} 字符)")
            return self._finish(DetectorPhase.TIMEOUT_PARTIAL, state.last_text)

        self._finish(DetectorPhase.TIMEOUT_EMPTY, "")
        raise NoAnswerError(f"{self.deadline:.0f}s 内未观测到任何答案")

    # ==================== 单次采样 ====================

    def _sample(self, observe: Callable[[], ObservationSample]) -> ObservationSample:
        """单次读取失败按空样本处理，不中断整体流程"""
        try:
            sample = observe()
        except Exception as e:
            logger.debug(f"{self._label}采样异常（按空样本处理）: {e}")
            return ObservationSample()

        return sample if sample is not None else ObservationSample()

    def _consume(self, sample: ObservationSample) -> Optional[str]:
        """处理一个样本；达到稳定时返回最终文本"""
        state = self.state
        text = sample.text or ""

        if not text:
            # 最终容器已出现但读不到文本：沿用上次读到的内容
            if sample.settled and not sample.busy and state.last_text:
                logger.info(f"{self._label}[Exit] 最终容器已出现，使用上次文本")
                return state.last_text
            return None

        self._emit(text)

        if text == state.last_text:
            state.stable_count += 1
        else:
            state.stable_count = 0
            state.last_text = text

        threshold = self.settled_threshold if sample.settled else self.low_threshold

        if not sample.busy and state.stable_count >= threshold:
            logger.info(f"{self._label}[Exit] 提前稳定（{state.stable_count} 次不变 + 非忙碌）")
            return text

        if state.stable_count >= self.high_threshold:
            logger.info(f"{self._label}[Exit] 强制稳定（{state.stable_count} 次不变，busy={sample.busy}）")
            return text

        return None

    def _emit(self, text: str):
        state = self.state

        if len(text) <= state.last_emitted_length:
            return

        if not text.startswith(self._emitted):
            logger.warning(f"{self._label}[Output] 文本与已发送前缀不一致，继续按长度增量发送")

        delta = text[state.last_emitted_length:]
        state.last_emitted_length = len(text)
        self._emitted = text

        if self._sink is None:
            return

        try:
            self._sink(delta)
        except Exception as e:
            # 消费方已离开：停止推送，执行照常完成
            logger.warning(f"{self._label}[Output] 增量推送失败，停止推送: {e}")
            self._sink = None

    def _finish(self, phase: DetectorPhase, text: str) -> DetectorOutcome:
        state = self.state
        self.phase = phase
        elapsed = self._clock() - state.start_time

        completion = (CompletionStatus.CONVERGED if phase is DetectorPhase.STABLE
                      else CompletionStatus.TIMED_OUT)

        logger.info(f"{self._label}检测结束: {phase.value}, polls={state.polls}, "
                    f"chars={len(text)}, elapsed={elapsed:.1f}s")

        self.state = None
        self._sink = None
        return DetectorOutcome(text=text, completion=completion, polls=state.polls, elapsed=elapsed)
