"""
config_engine.py - 后端配置引擎

职责：
- 内置后端配置表（选择器级联、超时、稳定阈值）
- backends.json 覆盖配置加载
- 覆盖项校验与回退
- 配置文件热更新（按 mtime）
"""

import json
import os
import re
import copy
import logging
from typing import Dict, Optional, List, Any

from data_models import BackendProfile


# ================= 常量配置 =================

class ConfigConstants:
    """配置引擎常量"""
    CONFIG_FILE = os.getenv("BACKENDS_CONFIG_FILE", "backends.json")
    DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "perplexity")


# ================= 内置后端配置 =================

PERPLEXITY_PROFILE: BackendProfile = {
    "name": "perplexity",
    "owned_by": "perplexity",
    "url": "https://www.perplexity.ai/",
    # 匿名可用，每次查询开在全新的浏览器上下文
    "isolated_context": True,
    "deadline": 120.0,
    "low_threshold": 3,
    "high_threshold": 8,
    "settled_threshold": 3,
    "min_answer_chars": 0,
    "input_selectors": [
        'textarea',
        '[contenteditable="true"]',
        'input[type="text"]',
        '[placeholder*="Ask"]',
        '[placeholder*="Search"]',
        '[placeholder*="follow"]',
        '[role="textbox"]',
    ],
    "require_opaque": False,
    "send_selectors": [],
    "send_label_keywords": [],
    "dismiss_selectors": [],
    "answer_regions": [
        {"selector": '.prose.dark\\:prose-invert', "mode": "join", "tier": 0, "min_chars": 6},
        {"selector": '[class*="MarkdownBlock"]', "mode": "longest", "tier": 1},
        {"selector": '[class*="answer"]', "mode": "longest", "tier": 1},
        {"selector": '[class*="response"]', "mode": "longest", "tier": 1},
        {"selector": '[data-testid*="answer"]', "mode": "longest", "tier": 1},
        {"selector": 'article', "mode": "longest", "tier": 1},
        {"selector": 'main', "mode": "longest", "tier": 1},
    ],
    "strip_selectors": ['.citation', '.citation-nbsp', '[class*="SeeMore"]'],
    "busy_selectors": [
        '[class*="animate-spin"]',
        '[class*="animate-pulse"]',
        '[class*="Spinner"]',
        '.loading-spinner',
    ],
    "settled_selectors": [],
    "citation_selector": '[data-pplx-citation-url]',
    "citation_url_attr": 'data-pplx-citation-url',
    "citation_exclude_hosts": ['perplexity.ai', 'google.com'],
}

_GEMINI_USER_QUERY = ['user-query', '[class*="user-query"]']
_GEMINI_EDITOR = _GEMINI_USER_QUERY + ['.ql-editor', 'rich-textarea', '[role="textbox"]']

GEMINI_PROFILE: BackendProfile = {
    "name": "gemini",
    "owned_by": "google",
    "url": "https://gemini.google.com/app",
    # 需要登录，必须留在默认上下文才能用到 profile 的 cookie
    "isolated_context": False,
    "deadline": 300.0,
    "low_threshold": 3,
    "high_threshold": 10,
    "settled_threshold": 2,
    "min_answer_chars": 10,
    "input_selectors": [
        '.ql-editor',
        'rich-textarea .ql-editor',
        'rich-textarea [contenteditable="true"]',
        '[contenteditable="true"]',
        'textarea',
        '[aria-label*="prompt" i]',
        '[aria-label*="Enter a prompt" i]',
        '[placeholder*="Enter a prompt" i]',
        '[placeholder*="Ask Gemini" i]',
        'input[type="text"]',
        '[role="textbox"]',
    ],
    "require_opaque": True,
    "send_selectors": [
        'button[aria-label*="Send" i]',
        'button[aria-label*="Submit" i]',
        '.send-button',
        '[data-mat-icon-name="send"]',
    ],
    "send_label_keywords": ['send', 'submit'],
    "dismiss_selectors": [
        'button[aria-label="Close"]',
        'button[aria-label="Dismiss"]',
        'button[aria-label="Got it"]',
        '[class*="dismiss"]',
        '[class*="close-button"]',
    ],
    "answer_regions": [
        {"selector": 'model-response .markdown', "mode": "last", "tier": 0},
        {"selector": 'model-response', "mode": "last", "tier": 1},
        {"selector": '.response-container-content .markdown', "mode": "longest", "tier": 2,
         "exclude_within": _GEMINI_USER_QUERY},
        {"selector": '.response-container-content', "mode": "longest", "tier": 2,
         "exclude_within": _GEMINI_USER_QUERY},
        {"selector": 'message-content .markdown', "mode": "last", "tier": 3,
         "exclude_within": _GEMINI_USER_QUERY},
        {"selector": '.markdown-main-panel', "mode": "last", "tier": 3,
         "exclude_within": _GEMINI_USER_QUERY},
        {"selector": 'response-container .markdown', "mode": "last", "tier": 3,
         "exclude_within": _GEMINI_USER_QUERY},
        {"selector": '[data-speaker="model"]', "mode": "last", "tier": 3,
         "exclude_within": _GEMINI_USER_QUERY},
        {"selector": '[data-role="assistant"]', "mode": "last", "tier": 3,
         "exclude_within": _GEMINI_USER_QUERY},
        {"selector": '[class*="markdown"], [class*="Markdown"]', "mode": "longest", "tier": 4,
         "exclude_within": _GEMINI_EDITOR},
        {"selector": 'model-response', "mode": "last", "tier": 5,
         "strip": ['.cdk-visually-hidden', 'button']},
    ],
    "strip_selectors": [
        '.cdk-visually-hidden',
        'button',
        '.actions',
        '.feedback',
        '[class*="action"]',
        '[class*="toolbar"]',
        '[class*="copy"]',
        '[class*="vote"]',
        '[class*="rating"]',
        '[aria-label*="Copy"]',
    ],
    "busy_selectors": ['pending-response'],
    "settled_selectors": ['model-response'],
    "citation_selector": None,
    "citation_url_attr": None,
    "citation_exclude_hosts": [],
}

DEFAULT_PROFILES: Dict[str, BackendProfile] = {
    "perplexity": PERPLEXITY_PROFILE,
    "gemini": GEMINI_PROFILE,
}

# 覆盖项的类型约束
NUMERIC_KEYS = {"deadline", "low_threshold", "high_threshold", "settled_threshold", "min_answer_chars"}
BOOL_KEYS = {"isolated_context", "require_opaque"}
SELECTOR_LIST_KEYS = {
    "input_selectors", "send_selectors", "dismiss_selectors",
    "strip_selectors", "busy_selectors", "settled_selectors",
}

# 无效选择器语法模式（DrissionPage 的定位语法不能混入 CSS 选择器）
INVALID_SYNTAX_PATTERNS = [
    (r'^(xpath|tag|text|css):', '定位前缀不是 CSS 语法'),
    (r'@@', '@@ 不是 CSS 语法'),
    (r'^\s*$', '空选择器'),
]


# ================= 日志配置 =================

logger = logging.getLogger('config_engine')
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('[%(asctime)s] %(levelname)s [Config] %(message)s', datefmt='%H:%M:%S')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


# ================= 覆盖项验证器 =================

class ProfileValidator:
    """覆盖配置验证器：无效项丢弃并回退到内置值"""

    def validate(self, name: str, overrides: Dict[str, Any]) -> Dict[str, Any]:
        fixed = {}

        for key, value in overrides.items():
            if key in NUMERIC_KEYS:
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                    logger.warning(f"❌ 无效数值 [{name}.{key}]: {value!r}，使用内置值")
                    continue
                fixed[key] = value

            elif key in BOOL_KEYS:
                if not isinstance(value, bool):
                    logger.warning(f"❌ 无效开关 [{name}.{key}]: {value!r}，使用内置值")
                    continue
                fixed[key] = value

            elif key in SELECTOR_LIST_KEYS:
                selectors = self._validate_selectors(name, key, value)
                if selectors is not None:
                    fixed[key] = selectors

            elif key == "answer_regions":
                regions = self._validate_regions(name, value)
                if regions:
                    fixed[key] = regions

            else:
                fixed[key] = value

        return fixed

    def _validate_selectors(self, name: str, key: str, value: Any) -> Optional[List[str]]:
        if not isinstance(value, list):
            logger.warning(f"❌ [{name}.{key}] 应该是列表，使用内置值")
            return None

        valid = []
        for selector in value:
            reason = self._invalid_reason(selector)
            if reason:
                logger.warning(f"❌ 无效选择器 [{name}.{key}]: {selector!r} ({reason})")
                continue
            valid.append(selector)
        return valid

    def _validate_regions(self, name: str, value: Any) -> List[Dict[str, Any]]:
        if not isinstance(value, list):
            logger.warning(f"❌ [{name}.answer_regions] 应该是列表，使用内置值")
            return []

        regions = []
        for region in value:
            if not isinstance(region, dict) or self._invalid_reason(region.get("selector")):
                logger.warning(f"❌ 无效答案区域 [{name}]: {region!r}")
                continue
            if region.get("mode", "longest") not in ("join", "last", "longest"):
                logger.warning(f"❌ 未知读取模式 [{name}]: {region.get('mode')!r}")
                continue
            regions.append(region)
        return regions

    def _invalid_reason(self, selector: Any) -> Optional[str]:
        if not isinstance(selector, str):
            return "不是字符串"
        for pattern, reason in INVALID_SYNTAX_PATTERNS:
            if re.search(pattern, selector):
                return reason
        return None


# ================= 配置引擎 =================

class ConfigEngine:
    """后端配置引擎主类"""

    def __init__(self, config_file: str = None):
        self.config_file = config_file or ConfigConstants.CONFIG_FILE
        self.last_mtime = 0.0
        self.validator = ProfileValidator()
        self.overrides: Dict[str, Dict[str, Any]] = self._load_config()

        logger.info(f"配置引擎已初始化，内置后端 {len(DEFAULT_PROFILES)} 个，覆盖 {len(self.overrides)} 个")

    def _read_file(self) -> Dict[str, Any]:
        with open(self.config_file, "r", encoding="utf-8") as f:
            content = f.read().strip()
            if not content:
                return {}
            data = json.loads(content)

        if not isinstance(data, dict):
            raise ValueError("顶层结构应该是对象")
        return data

    def _load_config(self) -> Dict[str, Dict[str, Any]]:
        """初始化加载覆盖配置"""
        if not os.path.exists(self.config_file):
            logger.debug(f"覆盖配置 {self.config_file} 不存在，使用内置配置")
            return {}

        try:
            self.last_mtime = os.path.getmtime(self.config_file)
            data = self._read_file()
            logger.info(f"已加载覆盖配置: {self.config_file} (mtime: {self.last_mtime})")
            return data
        except (OSError, ValueError) as e:
            logger.error(f"覆盖配置格式错误，忽略: {e}")
            return {}

    def refresh_if_changed(self):
        """检查文件是否变化，如果变化则重载"""
        if not os.path.exists(self.config_file):
            if self.overrides:
                logger.info("⚡ 覆盖配置已删除，恢复内置配置")
                self.overrides = {}
                self.last_mtime = 0.0
            return

        try:
            current_mtime = os.path.getmtime(self.config_file)
        except OSError as e:
            logger.error(f"检查文件变化失败: {e}")
            return

        if current_mtime != self.last_mtime:
            logger.info(f"⚡ 检测到覆盖配置变化 (new mtime: {current_mtime})")
            self.reload_config()

    def reload_config(self):
        """重新加载（解析失败时保留旧配置）"""
        try:
            mtime = os.path.getmtime(self.config_file)
            data = self._read_file()
        except (OSError, ValueError) as e:
            logger.error(f"❌ 重载覆盖配置失败，保留旧配置: {e}")
            return

        self.overrides = data
        self.last_mtime = mtime
        logger.info(f"✅ 覆盖配置已热重载 (Backends: {len(self.overrides)})")

    def list_backends(self) -> List[str]:
        names = list(DEFAULT_PROFILES)
        for name in self.overrides:
            if name not in names:
                names.append(name)
        return names

    def get_profile(self, name: str) -> Optional[BackendProfile]:
        """
        获取后端配置快照（内置 + 覆盖）

        仅存在于覆盖文件中的后端，以 DEFAULT_MODEL 对应的内置配置为底
        （DEFAULT_MODEL 不是内置后端时退回 perplexity）
        """
        self.refresh_if_changed()

        base = DEFAULT_PROFILES.get(name)
        overrides = self.overrides.get(name)

        if base is None and overrides is None:
            return None

        profile = copy.deepcopy(base or DEFAULT_PROFILES.get(ConfigConstants.DEFAULT_MODEL, PERPLEXITY_PROFILE))
        if isinstance(overrides, dict):
            profile.update(self.validator.validate(name, overrides))
        profile["name"] = name

        return profile


# ================= 单例 =================

config_engine = ConfigEngine()
