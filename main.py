"""
main.py - FastAPI 主入口

职责：
- HTTP 服务启动
- 路由定义（OpenAI 兼容接口 + 诊断接口）
- 中间件配置
- 所有查询经 QueryEngine 串行执行
"""

import os
import time
import queue
import asyncio
import logging
import threading
from typing import Optional
from contextlib import asynccontextmanager
from collections import deque

from fastapi import FastAPI, Request, HTTPException, Header, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse, JSONResponse, Response

from adapters import BackendAdapter, get_adapter
from browser_core import (
    BrowserError, BrowserConnectionError, SubmissionError, NoAnswerError,
    ConfigurationError, get_browser,
)
from config_engine import config_engine, ConfigConstants
from data_models import ChatCompletionRequest, ModelInfo, ModelsResponse
from engine import query_engine
from protocol import (
    InvalidRequestError, MessageValidator, SSEFormatter,
    build_completion_response, error_body, flatten_messages,
)
from request_manager import request_manager, RequestContext


# ================= 环境变量配置 =================

class AppConfig:
    """应用配置"""
    HOST = os.getenv("APP_HOST", "127.0.0.1")
    PORT = int(os.getenv("APP_PORT", "3000"))
    DEBUG = os.getenv("APP_DEBUG", "false").lower() == "true"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
    CORS_ENABLED = os.getenv("CORS_ENABLED", "true").lower() == "true"

    AUTH_ENABLED = os.getenv("AUTH_ENABLED", "false").lower() == "true"
    AUTH_TOKEN = os.getenv("AUTH_TOKEN", "")

    # 启动时即拉起浏览器（默认首个请求时才启动）
    BROWSER_PRELAUNCH = os.getenv("BROWSER_PRELAUNCH", "false").lower() == "true"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    VERSION = "1.0.0"


# ================= 日志配置 =================

LOG_LEVEL = getattr(logging, AppConfig.LOG_LEVEL, logging.INFO)

logging.basicConfig(
    level=LOG_LEVEL,
    format='[%(asctime)s] %(levelname)s [%(name)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
# root 已有 handler 时 basicConfig 不生效，级别需单独设置
logging.getLogger().setLevel(LOG_LEVEL)

logger = logging.getLogger('main')


# ================= 日志收集器 =================

class LogCollector:
    """收集最近的日志供 /api/logs 查看"""

    def __init__(self, max_logs=500):
        self.logs = deque(maxlen=max_logs)
        self.lock = threading.Lock()

    def add(self, level: str, message: str):
        with self.lock:
            self.logs.append({
                "timestamp": time.time(),
                "level": level,
                "message": message
            })

    def get_recent(self, since: float = 0):
        with self.lock:
            return [log for log in self.logs if log["timestamp"] > since]

    def clear(self):
        with self.lock:
            self.logs.clear()


log_collector = LogCollector()


class WebLogHandler(logging.Handler):
    def emit(self, record):
        try:
            log_collector.add(record.levelname, self.format(record))
        except Exception:
            self.handleError(record)


web_handler = WebLogHandler()
web_handler.setLevel(logging.INFO)
logging.getLogger().addHandler(web_handler)


# ================= Lifespan =================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 60)
    logger.info("Web Chat Bridge 服务启动中...")
    logger.info(f"监听地址: http://{AppConfig.HOST}:{AppConfig.PORT}")
    logger.info(f"调试模式: {AppConfig.DEBUG}")
    logger.info(f"认证: {'启用' if AppConfig.AUTH_ENABLED else '禁用'}")
    logger.info(f"可用后端: {', '.join(config_engine.list_backends())} (默认 {ConfigConstants.DEFAULT_MODEL})")
    logger.info("=" * 60)

    browser = get_browser()

    if AppConfig.BROWSER_PRELAUNCH:
        # 经过串行队列启动，保证浏览器只被一个工作线程触碰
        future = request_manager.jobs.enqueue(browser.ensure, label="prelaunch")
        try:
            await asyncio.wrap_future(future)
        except BrowserConnectionError as e:
            logger.warning(f"⚠️ 浏览器预启动失败，将在首个请求时重试: {e}")

    logger.info("🚀 服务已就绪！")
    logger.info(f"   健康检查: http://{AppConfig.HOST}:{AppConfig.PORT}/health")

    yield

    logger.info("服务正在关闭...")
    browser.close()
    logger.info("👋 服务已停止")


# ================= FastAPI 应用 =================

app = FastAPI(
    title="Web Chat Bridge",
    description="把网页版对话服务转换为 OpenAI 兼容 API",
    version=AppConfig.VERSION,
    docs_url="/docs" if AppConfig.DEBUG else None,
    redoc_url="/redoc" if AppConfig.DEBUG else None,
    lifespan=lifespan
)


# ================= CORS =================

if AppConfig.CORS_ENABLED:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=AppConfig.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ================= 认证 =================

async def verify_auth(authorization: Optional[str] = Header(None)) -> bool:
    if not AppConfig.AUTH_ENABLED:
        return True

    if not AppConfig.AUTH_TOKEN:
        raise HTTPException(status_code=500, detail="服务配置错误")

    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="未提供认证令牌",
            headers={"WWW-Authenticate": "Bearer"}
        )

    token = authorization.replace("Bearer ", "").strip()

    if token != AppConfig.AUTH_TOKEN:
        raise HTTPException(
            status_code=401,
            detail="认证令牌无效",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return True


# ================= 核心 API =================

def _invalid(exc: InvalidRequestError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=error_body(exc.message, code=exc.code, param=exc.param)
    )


def _error_code(exc: Exception) -> str:
    if isinstance(exc, SubmissionError):
        return "submission_failed"
    if isinstance(exc, NoAnswerError):
        return "no_answer"
    if isinstance(exc, BrowserConnectionError):
        return "browser_unavailable"
    return "internal_error"


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    body: ChatCompletionRequest,
    authenticated: bool = Depends(verify_auth)
):
    """
    OpenAI 兼容的聊天补全接口

    请求进入串行队列，同一时刻只有一个查询在驱动浏览器
    """
    try:
        messages = MessageValidator.validate(body.messages)
        query = flatten_messages(messages)
    except InvalidRequestError as e:
        return _invalid(e)

    model = body.model or ConfigConstants.DEFAULT_MODEL
    try:
        adapter = get_adapter(model)
    except ConfigurationError:
        return _invalid(InvalidRequestError(
            f'Unsupported model: "{model}". Available: {", ".join(config_engine.list_backends())}',
            "model_not_found", param="model"
        ))

    ctx = request_manager.create_request()
    logger.info(f"请求 [{ctx.request_id}] 开始 (model={model}, backend={adapter.name}, stream={bool(body.stream)})")

    if body.stream:
        return StreamingResponse(
            _stream_answer(request, adapter, query, model, ctx),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no"
            }
        )

    try:
        result = await asyncio.wrap_future(query_engine.submit(adapter, query, ctx=ctx))
    except BrowserError as e:
        logger.error(f"请求 [{ctx.request_id}] 失败: {e}")
        return JSONResponse(
            status_code=500,
            content=error_body(str(e), error_type="server_error", code=_error_code(e))
        )
    except Exception as e:
        logger.error(f"请求 [{ctx.request_id}] 异常: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=error_body(str(e) or type(e).__name__, error_type="server_error", code=_error_code(e))
        )

    logger.info(f"请求 [{ctx.request_id}] 结束 ({result.completion.value}, {result.elapsed:.1f}s)")
    return JSONResponse(content=build_completion_response(result, model))


_DONE = object()


async def _stream_answer(request: Request, adapter: BackendAdapter, query: str,
                         model: str, ctx: RequestContext):
    """
    流式响应

    增量由工作线程推入 chunk_queue，这里按顺序取出转成 SSE。
    客户端断开只停止推送：排队中的任务被取消，执行中的任务照常跑完，结果丢弃
    """
    chunk_queue = queue.Queue()
    closed = threading.Event()

    def on_delta(text: str):
        if closed.is_set():
            raise RuntimeError("客户端已断开")
        chunk_queue.put(text)

    future = query_engine.submit(adapter, query, on_delta=on_delta, ctx=ctx)
    future.add_done_callback(lambda f: chunk_queue.put(_DONE))

    try:
        yield SSEFormatter.pack_role(model)

        while True:
            if await request.is_disconnected():
                logger.info(f"请求 [{ctx.request_id}] 检测到客户端断开，停止推送")
                return

            try:
                item = await asyncio.to_thread(chunk_queue.get, timeout=0.5)
            except queue.Empty:
                continue

            if item is _DONE:
                break

            yield SSEFormatter.pack_chunk(item, model)

        try:
            result = future.result()
        except Exception as e:
            logger.error(f"请求 [{ctx.request_id}] 失败: {e}")
            yield SSEFormatter.pack_error(str(e), model)
            return

        logger.info(f"请求 [{ctx.request_id}] 结束 ({result.completion.value}, {result.elapsed:.1f}s)")
        yield SSEFormatter.pack_finish(model)

    finally:
        closed.set()
        future.cancel()


# ================= 模型列表 =================

@app.get("/v1/models")
async def list_models(authenticated: bool = Depends(verify_auth)):
    data = []
    for name in config_engine.list_backends():
        profile = config_engine.get_profile(name) or {}
        data.append(ModelInfo(id=name, owned_by=profile.get("owned_by") or name, root=name))
    return ModelsResponse(data=data)


# ================= 健康检查 =================

@app.get("/health")
async def health_check():
    browser_health = get_browser().health_check()
    rm_status = request_manager.get_status()

    return {
        "status": "ok",
        "version": AppConfig.VERSION,
        "browser": browser_health["status"],
        "browser_detail": browser_health,
        "models": config_engine.list_backends(),
        "queue_length": rm_status["queue_depth"],
        "processing": rm_status["busy"],
        "current_request_id": rm_status["current_request_id"],
        "stats": rm_status["stats"],
        "timestamp": int(time.time())
    }


# ================= 日志 API =================

@app.get("/api/logs")
async def get_logs(since: float = 0, authenticated: bool = Depends(verify_auth)):
    logs = log_collector.get_recent(since)
    return {"logs": logs, "timestamp": time.time()}


@app.delete("/api/logs")
async def clear_logs(authenticated: bool = Depends(verify_auth)):
    log_collector.clear()
    return {"status": "success"}


# ================= 调试 API =================

@app.get("/api/debug/request-status")
async def request_status(authenticated: bool = Depends(verify_auth)):
    """查看请求队列状态"""
    return request_manager.get_status()


@app.get("/favicon.ico")
async def favicon():
    return Response(status_code=204)


@app.get("/")
async def root():
    return {
        "service": "Web Chat Bridge",
        "version": AppConfig.VERSION,
        "endpoints": {
            "chat": "/v1/chat/completions",
            "models": "/v1/models",
            "health": "/health",
            "logs": "/api/logs"
        }
    }


# ================= 异常处理 =================

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    return JSONResponse(
        status_code=400,
        content=error_body(
            first.get("msg", "请求格式错误"),
            code="invalid_request",
            param=".".join(loc) or None
        )
    )


@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=404,
        content=error_body(
            f"Unknown endpoint: {request.method} {request.url.path}",
            code="unknown_endpoint"
        )
    )


# ================= 主入口 =================

if __name__ == "__main__":
    import uvicorn

    print("\n" + "=" * 60)
    print("环境变量配置（可选）:")
    print("  APP_HOST=0.0.0.0          # 监听地址")
    print("  APP_PORT=3000             # 监听端口")
    print("  APP_DEBUG=true            # 调试模式")
    print("  AUTH_ENABLED=true         # 启用认证")
    print("  AUTH_TOKEN=your-secret    # 认证令牌")
    print("  DEFAULT_MODEL=perplexity  # 未指定 model 时使用的后端")
    print("  BROWSER_PRELAUNCH=true    # 启动时即拉起浏览器")
    print("=" * 60 + "\n")

    uvicorn.run(
        app,
        host=AppConfig.HOST,
        port=AppConfig.PORT,
        log_level=AppConfig.LOG_LEVEL.lower(),
        access_log=False
    )
