"""
engine.py - 查询执行引擎

一次执行：
    打开执行槽（新标签页） -> prepare -> submit -> 收敛检测 -> 收集引用 -> 释放执行槽

所有执行都经过 RequestManager 的串行队列，同一时刻只有一个执行槽在使用浏览器
"""

import os
import time
from concurrent.futures import Future
from typing import Callable

from DrissionPage.errors import PageDisconnectedError

from adapters import BackendAdapter
from browser_core import (
    BrowserConstants, BrowserCore, BrowserConnectionError, SubmissionError,
    SecureLogger, get_browser,
)
from convergence import ConvergenceDetector, DeltaSink
from data_models import AnswerResult, CompletionStatus
from html_inspector import page_inspector
from request_manager import RequestManager, RequestContext, request_manager


logger = SecureLogger('engine')


class QueryEngine:
    """适配器无关的执行引擎"""

    def __init__(self, browser: BrowserCore = None,
                 requests: RequestManager = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self._browser = browser
        self.requests = requests or request_manager
        self._clock = clock
        self._sleep = sleep

    @property
    def browser(self) -> BrowserCore:
        if self._browser is None:
            self._browser = get_browser()
        return self._browser

    # ==================== 对外入口 ====================

    def submit(self, adapter: BackendAdapter, query: str,
               on_delta: DeltaSink = None,
               ctx: RequestContext = None) -> "Future[AnswerResult]":
        """
        排队执行一次查询

        on_delta 在工作线程中被调用，按偏移递增顺序，且都发生在 Future 完成之前
        """
        ctx = ctx or self.requests.create_request()
        return self.requests.submit(
            ctx, lambda: self.execute(adapter, query, on_delta, request_id=ctx.request_id)
        )

    def make_detector(self, adapter: BackendAdapter, label: str = "") -> ConvergenceDetector:
        profile = adapter.profile
        return ConvergenceDetector(
            deadline=adapter.deadline,
            low_threshold=int(profile.get("low_threshold", 3)),
            high_threshold=int(profile.get("high_threshold", 8)),
            settled_threshold=profile.get("settled_threshold"),
            clock=self._clock,
            sleep=self._sleep,
            label=label,
        )

    # ==================== 单次执行 ====================

    def execute(self, adapter: BackendAdapter, query: str,
                on_delta: DeltaSink = None,
                request_id: str = "-") -> AnswerResult:
        """在当前线程直接执行（调用方负责串行化）"""
        label = f"[{request_id}] "
        started = self._clock()

        logger.info_sensitive(f"{label}▶ {adapter.name} 开始执行", query)

        try:
            with self.browser.open_slot(adapter.url, isolated=adapter.isolated_context) as slot:
                source = slot.source

                adapter.prepare(source)

                if not adapter.submit(source, query):
                    self._diagnose(source, adapter, request_id)
                    raise SubmissionError(f"{adapter.name}: 未找到可用的输入框")

                detector = self.make_detector(adapter, label)
                outcome = detector.run(lambda: adapter.observe(source, query), on_delta)

                # 引用只在确认收敛后才可信
                citations = ()
                if outcome.completion is CompletionStatus.CONVERGED:
                    citations = adapter.collect_citations(source)

        except PageDisconnectedError as e:
            self.browser.invalidate()
            raise BrowserConnectionError(f"浏览器连接中断: {e}") from e

        elapsed = self._clock() - started
        logger.info_sensitive(
            f"{label}■ {adapter.name} 完成 ({outcome.completion.value}, "
            f"引用 {len(citations)} 条, {elapsed:.1f}s)",
            outcome.text,
        )

        return AnswerResult(
            answer_text=outcome.text,
            citations=tuple(citations),
            completion=outcome.completion,
            backend=adapter.name,
            elapsed=elapsed,
        )

    def _diagnose(self, source, adapter: BackendAdapter, request_id: str):
        """提交失败诊断（失败只记录日志，不掩盖 SubmissionError）"""
        try:
            html = source.html
        except Exception as e:
            logger.warning(f"[{request_id}] 无法读取页面 HTML: {e}")
            return

        summary = page_inspector.summarize(html, adapter.profile.get("input_selectors"))
        logger.warning(f"[{request_id}] ❌ 提交失败诊断\n{page_inspector.format_summary(summary)}")

        snapshot_dir = BrowserConstants.get('DEBUG_SNAPSHOT_DIR')
        if not snapshot_dir:
            return

        path = os.path.join(snapshot_dir, f"{request_id}-{adapter.name}.html")
        try:
            os.makedirs(snapshot_dir, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                f.write(page_inspector.clean(html))
            logger.info(f"[{request_id}] 页面快照已保存: {path}")
        except OSError as e:
            logger.warning(f"[{request_id}] 页面快照保存失败: {e}")


# ================= 单例 =================

query_engine = QueryEngine()
