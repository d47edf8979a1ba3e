"""
request_manager.py - 请求调度

职责：
- JobQueue：单工作线程的串行任务队列（同一时刻最多一个任务在执行，按入队顺序开始）
- RequestContext：单个请求的状态与耗时记录
- RequestManager：请求创建、提交与诊断统计

说明：
- 排队中的任务可以取消（Future.cancel），已开始的任务不会被中断
- 任务失败不会阻塞后续任务
"""

import time
import uuid
import logging
import threading
from enum import Enum
from collections import deque, OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Optional, Dict, Any, Deque


logger = logging.getLogger('request_manager')


# ================= 串行任务队列 =================

@dataclass
class QueuedJob:
    task: Callable[[], Any]
    future: Future
    label: str = ""
    enqueued_at: float = field(default_factory=time.time)


class JobQueue:
    """串行任务队列：enqueue(task) -> Future"""

    def __init__(self, name: str = "jobs"):
        self.name = name
        self._jobs: Deque[QueuedJob] = deque()
        self._cond = threading.Condition()
        self._worker: Optional[threading.Thread] = None
        self._current: Optional[QueuedJob] = None
        self._started = 0

    def enqueue(self, task: Callable[[], Any], label: str = "") -> Future:
        future = Future()
        job = QueuedJob(task=task, future=future, label=label)

        with self._cond:
            self._jobs.append(job)
            self._ensure_worker()
            self._cond.notify()

        logger.debug(f"任务入队 [{label}]，队列深度 {len(self._jobs)}")
        return future

    def _ensure_worker(self):
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._run, name=f"{self.name}-worker", daemon=True)
            self._worker.start()

    def _run(self):
        while True:
            with self._cond:
                while not self._jobs:
                    self._cond.wait()
                job = self._jobs.popleft()
                self._current = job

            try:
                # 排队期间被取消的任务直接跳过
                if not job.future.set_running_or_notify_cancel():
                    logger.debug(f"跳过已取消任务 [{job.label}]")
                    continue

                self._started += 1
                try:
                    result = job.task()
                except Exception as e:
                    job.future.set_exception(e)
                else:
                    job.future.set_result(result)
            finally:
                with self._cond:
                    self._current = None

    @property
    def depth(self) -> int:
        """等待中的任务数（不含正在执行的）"""
        with self._cond:
            return len(self._jobs)

    @property
    def busy(self) -> bool:
        return self._current is not None

    @property
    def current_label(self) -> Optional[str]:
        job = self._current
        return job.label if job else None

    def get_status(self) -> Dict[str, Any]:
        return {
            "queue_depth": self.depth,
            "busy": self.busy,
            "current": self.current_label,
            "started": self._started,
        }


# ================= 请求上下文 =================

class RequestStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELLED}


@dataclass
class RequestContext:
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    created_at: float = field(default_factory=time.time)
    status: RequestStatus = RequestStatus.QUEUED
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    cancel_reason: Optional[str] = None

    def mark_running(self):
        self.status = RequestStatus.RUNNING
        self.started_at = time.time()

    def mark_completed(self):
        self.status = RequestStatus.COMPLETED
        self.finished_at = time.time()

    def mark_failed(self, error: str):
        self.status = RequestStatus.FAILED
        self.error = error
        self.finished_at = time.time()

    def mark_cancelled(self, reason: str):
        self.status = RequestStatus.CANCELLED
        self.cancel_reason = reason
        self.finished_at = time.time()

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def wait_time(self) -> float:
        end = self.started_at or self.finished_at or time.time()
        return end - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "wait_time": round(self.wait_time, 2),
            "duration": round(self.finished_at - self.started_at, 2)
            if self.started_at and self.finished_at else None,
            "error": self.error,
            "cancel_reason": self.cancel_reason,
        }


# ================= 请求管理器 =================

class RequestManager:
    """请求创建、串行提交与统计"""

    MAX_HISTORY = 50

    def __init__(self, jobs: JobQueue = None):
        self.jobs = jobs or JobQueue()
        self._lock = threading.Lock()
        self._history: "OrderedDict[str, RequestContext]" = OrderedDict()
        self._stats = {status.value: 0 for status in TERMINAL_STATUSES}
        self._total = 0

    def create_request(self) -> RequestContext:
        ctx = RequestContext()
        with self._lock:
            self._total += 1
            self._history[ctx.request_id] = ctx
            while len(self._history) > self.MAX_HISTORY:
                self._history.popitem(last=False)
        return ctx

    def submit(self, ctx: RequestContext, task: Callable[[], Any]) -> Future:
        """把任务放入串行队列，返回结果 Future"""

        def run():
            ctx.mark_running()
            logger.info(f"请求 [{ctx.request_id}] 开始执行 (排队 {ctx.wait_time:.1f}s)")
            try:
                result = task()
            except Exception as e:
                ctx.mark_failed(str(e))
                self._record(ctx)
                logger.warning(f"请求 [{ctx.request_id}] 失败: {e}")
                raise
            ctx.mark_completed()
            self._record(ctx)
            return result

        future = self.jobs.enqueue(run, label=ctx.request_id)
        future.add_done_callback(lambda f: self._on_cancelled(ctx, f))

        depth = self.jobs.depth
        if depth or self.jobs.busy:
            logger.info(f"请求 [{ctx.request_id}] 已排队 (前方 {depth} 个等待)")
        return future

    def _on_cancelled(self, ctx: RequestContext, future: Future):
        if not future.cancelled():
            return
        ctx.mark_cancelled("cancelled_before_start")
        self._record(ctx)
        logger.info(f"请求 [{ctx.request_id}] 在排队时被取消")

    def _record(self, ctx: RequestContext):
        with self._lock:
            self._stats[ctx.status.value] += 1

    def get_request(self, request_id: str) -> Optional[RequestContext]:
        with self._lock:
            return self._history.get(request_id)

    def get_current_request_id(self) -> Optional[str]:
        return self.jobs.current_label

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            recent = [ctx.to_dict() for ctx in list(self._history.values())[-10:]]
            stats = dict(self._stats, total=self._total)

        return {
            "queue_depth": self.jobs.depth,
            "busy": self.jobs.busy,
            "current_request_id": self.get_current_request_id(),
            "stats": stats,
            "recent": recent,
        }


# ================= 单例 =================

request_manager = RequestManager()
