"""
browser_core.py - 浏览器运行时核心模块

职责：
- 浏览器常量与配置热重载
- 安全日志
- 异常定义
- 进程级共享浏览器（延迟启动 + 断线重启）
- 执行槽：每个查询独占一个全新标签页，结束时无条件释放

说明：
- 运行时本身不加锁，同一时刻只有 JobQueue 的工作线程会访问它
"""

import os
import json
import time
import uuid
import logging
import threading
from pathlib import Path
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable, Iterator

from DrissionPage import ChromiumPage, ChromiumOptions


# ================= 常量配置 =================

class BrowserConstants:
    """浏览器与流式检测相关常量"""

    _config = None
    _config_file = Path(os.getenv("BROWSER_CONFIG_FILE", "browser_config.json"))

    _DEFAULTS = {
        # 运行时
        'BROWSER_PORT': 9222,
        'BROWSER_HEADLESS': True,
        'BROWSER_USER_DATA_DIR': '',
        'BROWSER_ISOLATED_CONTEXT': True,
        'USER_AGENT': (
            'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
            '(KHTML, like Gecko) Chrome/145.0.0.0 Safari/537.36'
        ),
        'BROWSER_ARGUMENTS': [
            '--no-sandbox',
            '--disable-setuid-sandbox',
            '--disable-blink-features=AutomationControlled',
            '--disable-gpu',
        ],
        'WINDOW_SIZE': [1920, 1080],

        # 页面
        'PAGE_LOAD_TIMEOUT': 60,
        'PAGE_SETTLE_DELAY': 2.0,
        'SCROLL_SETTLE_DELAY': 0.5,
        'DISMISS_SETTLE_DELAY': 0.5,

        # 输入（仿人工节奏）
        'INPUT_SEARCH_TIMEOUT': 1,
        'CLICK_DELAY': 0.3,
        'CLEAR_DELAY': 0.2,
        'INSERT_DELAY': 0.5,

        # 流式检测
        'STREAM_WARMUP': 5.0,
        'STREAM_POLL_INTERVAL': 1.0,
        'STREAM_FALLBACK_MIN_CHARS': 30,

        # 调试
        'DEBUG_SNAPSHOT_DIR': '',
    }

    @classmethod
    def _load_config(cls):
        """从文件加载配置（缺失的键回退到默认值）"""
        config = cls._DEFAULTS.copy()

        if cls._config_file.exists():
            try:
                with open(cls._config_file, 'r', encoding='utf-8') as f:
                    config.update(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                logging.getLogger('browser').warning(f"浏览器配置读取失败，使用默认值: {e}")

        cls._config = config

    @classmethod
    def get(cls, key: str):
        """获取配置值（支持动态加载）"""
        if cls._config is None:
            cls._load_config()

        return cls._config.get(key, cls._DEFAULTS.get(key))

    @classmethod
    def override(cls, key: str, value):
        """进程内临时覆盖（不写回文件，reload 后失效）"""
        if cls._config is None:
            cls._load_config()
        cls._config[key] = value

    @classmethod
    def get_defaults(cls):
        return cls._DEFAULTS.copy()

    @classmethod
    def reload(cls):
        """重新加载配置（热重载）"""
        cls._config = None
        cls._load_config()


# ================= 安全日志配置 =================

class SecureLogger:
    """安全日志封装器：默认不输出查询/答案原文"""

    LOG_SENSITIVE = os.environ.get('BROWSER_LOG_SENSITIVE', 'false').lower() == 'true'

    def __init__(self, name: str, level: int = logging.INFO):
        self._logger = self._setup_logger(name, level)

    def _setup_logger(self, name: str, level: int) -> logging.Logger:
        logger = logging.getLogger(name)
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '[%(asctime)s] %(levelname)s %(message)s',
                datefmt='%H:%M:%S'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(level)
        return logger

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._logger.debug(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(msg, *args, **kwargs)

    def info_sensitive(self, msg: str, content: str = None,
                       max_preview: int = 50, *args, **kwargs):
        if content is None:
            self._logger.info(msg, *args, **kwargs)
            return

        if self.LOG_SENSITIVE:
            preview = content[:max_preview] + "..." if len(content) > max_preview else content
            preview = preview.replace("\n", " ")
            self._logger.info(f"{msg} | preview='{preview}'", *args, **kwargs)
        else:
            self._logger.info(f"{msg} | len={len(content)}", *args, **kwargs)


logger = SecureLogger('browser')


# ================= 异常定义 =================

class BrowserError(Exception):
    """浏览器相关错误基类"""
    pass


class BrowserConnectionError(BrowserError):
    """浏览器启动/连接错误"""
    pass


class SubmissionError(BrowserError):
    """找不到可用的输入框，查询未能提交"""
    pass


class NoAnswerError(BrowserError):
    """截止时间内从未观测到任何答案文本"""
    pass


class ConfigurationError(BrowserError):
    """配置错误"""
    pass


# ================= 执行槽 =================

STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
delete navigator.__proto__.webdriver;
"""


@dataclass
class ExecutionSlot:
    """一次查询独占的观测源（标签页），隔离模式下还独占一个浏览器上下文"""
    source: Any
    url: str
    slot_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    created_at: float = field(default_factory=time.time)
    context_id: Optional[str] = None
    dispose_context: Optional[Callable[[str], Any]] = None
    released: bool = False

    def release(self):
        """释放观测源（幂等，释放失败只记录日志）"""
        if self.released:
            return
        self.released = True

        try:
            self.source.close()
            logger.debug(f"[slot:{self.slot_id}] 标签页已关闭")
        except Exception as e:
            logger.debug(f"[slot:{self.slot_id}] 关闭标签页异常: {e}")

        # 上下文必须在标签页关闭之后销毁
        if self.context_id and self.dispose_context:
            try:
                self.dispose_context(self.context_id)
                logger.debug(f"[slot:{self.slot_id}] 浏览器上下文已销毁: {self.context_id}")
            except Exception as e:
                logger.warning(f"[slot:{self.slot_id}] 销毁浏览器上下文失败: {e}")


# ================= 浏览器核心 =================

class BrowserCore:
    """进程级共享浏览器：ensure() 延迟启动，invalidate() 标记失效"""

    def __init__(self, port: int = None):
        self.port = port or BrowserConstants.get('BROWSER_PORT')
        self.page: Optional[ChromiumPage] = None
        self._connected = False
        self.launched_at: Optional[float] = None
        self.slots_opened = 0

    @property
    def is_running(self) -> bool:
        return self._connected and self.page is not None

    def _build_options(self) -> ChromiumOptions:
        opts = ChromiumOptions()
        opts.set_local_port(self.port)
        opts.headless(bool(BrowserConstants.get('BROWSER_HEADLESS')))

        for arg in BrowserConstants.get('BROWSER_ARGUMENTS') or []:
            opts.set_argument(arg)

        width, height = BrowserConstants.get('WINDOW_SIZE')
        opts.set_argument(f'--window-size={width},{height}')

        user_agent = BrowserConstants.get('USER_AGENT')
        if user_agent:
            opts.set_user_agent(user_agent)

        user_data_dir = BrowserConstants.get('BROWSER_USER_DATA_DIR')
        if user_data_dir:
            # 持久化 profile，登录状态跨重启保留
            opts.set_user_data_path(user_data_dir)

        return opts

    def _connect(self) -> bool:
        try:
            logger.info("🚀 启动浏览器...")
            self.page = ChromiumPage(addr_or_opts=self._build_options())
            self._connected = True
            self.launched_at = time.time()
            logger.info("✅ 浏览器就绪")
            return True
        except Exception as e:
            logger.error(f"浏览器启动失败: {e}")
            self.page = None
            self._connected = False
            return False

    def _probe(self) -> bool:
        try:
            _ = self.page.latest_tab
            return True
        except Exception:
            return False

    def ensure(self) -> ChromiumPage:
        """返回可用的浏览器句柄，必要时（首次使用或断线后）重新启动"""
        if self._connected and self.page is not None:
            if self._probe():
                return self.page
            logger.warning("⚠️ 浏览器连接已断开，重新启动")
            self.invalidate()

        if not self._connect():
            raise BrowserConnectionError(f"无法启动浏览器 (端口: {self.port})")
        return self.page

    def invalidate(self):
        """断线回调：丢弃当前句柄，下次 ensure() 时重启"""
        self._connected = False
        self.page = None

    @staticmethod
    def _context_disposer(page: ChromiumPage) -> Callable[[str], Any]:
        # Target.disposeBrowserContext 只接受浏览器级会话
        def dispose(context_id: str):
            return page.browser._run_cdp('Target.disposeBrowserContext', browserContextId=context_id)
        return dispose

    @contextmanager
    def open_slot(self, url: str, isolated: Optional[bool] = None) -> Iterator[ExecutionSlot]:
        """
        打开执行槽：新建标签页 -> 注入初始化脚本 -> 导航

        isolated 为 True 时标签页开在全新的浏览器上下文中（不共享 profile 的 cookie），
        为 None 时取 BROWSER_ISOLATED_CONTEXT

        无论成功、超时还是异常，退出时都会关闭标签页并销毁其上下文
        """
        page = self.ensure()

        if isolated is None:
            isolated = bool(BrowserConstants.get('BROWSER_ISOLATED_CONTEXT'))
        tab = page.new_tab(new_context=isolated)
        slot = ExecutionSlot(source=tab, url=url)
        self.slots_opened += 1

        try:
            if isolated:
                info = tab.run_cdp('Target.getTargetInfo')['targetInfo']
                slot.context_id = info.get('browserContextId')
                slot.dispose_context = self._context_disposer(page)

            tab.run_cdp('Page.addScriptToEvaluateOnNewDocument', source=STEALTH_INIT_SCRIPT)
            logger.info(f"[slot:{slot.slot_id}] 🌐 导航: {url}")
            tab.get(url, timeout=BrowserConstants.get('PAGE_LOAD_TIMEOUT'))
            yield slot
        finally:
            slot.release()

    def health_check(self) -> Dict[str, Any]:
        result = {
            "status": "running" if self.is_running else "stopped",
            "connected": self.is_running,
            "port": self.port,
            "launched_at": self.launched_at,
            "slots_opened": self.slots_opened,
        }
        return result

    def close(self):
        """关闭浏览器"""
        logger.info("关闭浏览器")

        page = self.page
        self.invalidate()

        if page is not None:
            try:
                page.quit()
            except Exception as e:
                logger.debug(f"关闭浏览器异常: {e}")


# ================= 工厂函数 =================

_browser_instance: Optional[BrowserCore] = None
_browser_lock = threading.Lock()


def get_browser(port: int = None) -> BrowserCore:
    """获取共享浏览器实例（线程安全延迟初始化，不会立即启动浏览器）"""
    global _browser_instance

    if _browser_instance is not None:
        return _browser_instance

    with _browser_lock:
        if _browser_instance is None:
            _browser_instance = BrowserCore(port)

    return _browser_instance
