"""
adapters.py - 后端适配器

职责：
- 提交查询：按优先级查找可用输入框 -> 清空 -> 插入文本 -> 发送
- 观测页面：按优先级读取答案区域，取最长的清洗后文本 + 忙碌信号
- 回显保护：把页面回显的用户问题当作"尚无答案"
- 引用来源收集

所有站点差异都在配置表里（见 config_engine），适配器本身不含站点分支
"""

import re
import time
import random
from typing import Optional, List, Dict, Any, Tuple
from urllib.parse import urlparse

from DrissionPage.common import Keys

from browser_core import BrowserConstants, ConfigurationError, SecureLogger
from config_engine import config_engine, ConfigConstants
from data_models import BackendProfile, ObservationSample, Citation


logger = SecureLogger('adapters')


# ================= 页面脚本 =================

# 在元素上执行：存在、可见、非零尺寸、未被遮挡
USABLE_JS = """
const el = this;
const requireOpaque = arguments[0];
el.scrollIntoView({ behavior: 'instant', block: 'center' });
const rect = el.getBoundingClientRect();
const style = window.getComputedStyle(el);
if (style.display === 'none' || style.visibility === 'hidden') return false;
if (requireOpaque && style.opacity === '0') return false;
if (rect.width <= 0 || rect.height <= 0) return false;
const hit = document.elementFromPoint(rect.left + rect.width / 2, rect.top + rect.height / 2);
if (hit && hit !== el && !el.contains(hit) && !hit.contains(el)) return false;
return true;
"""

READ_JS = """
const cfg = arguments[0];

function clean(el, strip) {
    const clone = el.cloneNode(true);
    for (const sel of strip) {
        try { clone.querySelectorAll(sel).forEach(c => c.remove()); } catch (e) {}
    }
    return (clone.innerText || clone.textContent || '').trim();
}

function excluded(el, within) {
    return within.some(sel => { try { return !!el.closest(sel); } catch (e) { return false; } });
}

function present(sels) {
    return sels.some(sel => { try { return !!document.querySelector(sel); } catch (e) { return false; } });
}

const readings = cfg.regions.map(region => {
    let els = [];
    try { els = Array.from(document.querySelectorAll(region.selector)); } catch (e) { return ''; }
    els = els.filter(el => !excluded(el, region.exclude_within || []));
    if (els.length === 0) return '';

    const strip = region.strip || cfg.strip;
    if (region.mode === 'join') {
        return els.map(el => clean(el, strip))
            .filter(t => t.length >= (region.min_chars || 0))
            .join('\\n\\n');
    }
    if (region.mode === 'last') {
        return clean(els[els.length - 1], strip);
    }
    let best = '';
    for (const el of els) {
        const t = clean(el, strip);
        if (t.length > best.length) best = t;
    }
    return best;
});

return { readings: readings, busy: present(cfg.busy), settled: present(cfg.settled) };
"""

CLICK_SEND_JS = """
const cfg = arguments[0];
for (const sel of cfg.selectors) {
    let btn = null;
    try { btn = document.querySelector(sel); } catch (e) { continue; }
    if (btn) {
        (btn.closest('button') || btn).click();
        return true;
    }
}
if (cfg.keywords.length) {
    for (const btn of document.querySelectorAll('button')) {
        const label = (btn.getAttribute('aria-label') || '').toLowerCase();
        if (cfg.keywords.some(k => label.includes(k))) {
            btn.click();
            return true;
        }
    }
}
return false;
"""

DISMISS_JS = """
let clicked = 0;
for (const sel of arguments[0]) {
    let btn = null;
    try { btn = document.querySelector(sel); } catch (e) { continue; }
    if (btn) { btn.click(); clicked++; }
}
return clicked;
"""

SCROLL_BOTTOM_JS = "window.scrollTo(0, document.body.scrollHeight); return true;"

CITATIONS_JS = """
const cfg = arguments[0];
const primary = [];
if (cfg.selector) {
    document.querySelectorAll(cfg.selector).forEach(el => {
        const labelled = el.closest('[aria-label]');
        primary.push({
            url: el.getAttribute(cfg.attr) || '',
            title: (labelled && labelled.getAttribute('aria-label')) || (el.textContent || '').trim()
        });
    });
}
const links = Array.from(document.querySelectorAll('a[href^="http"]'))
    .map(a => ({ url: a.href, title: (a.textContent || '').trim() }));
return { primary: primary, links: links };
"""


# ================= 回显保护 =================

ECHO_PREFIX_CHARS = 120
ECHO_SAID_PREFIX_CHARS = 100
ECHO_MIN_PREFIX_QUERY_CHARS = 20

_YOU_SAID = re.compile(r'^you said\s*')


def _normalize(text: str) -> str:
    return re.sub(r'\s+', ' ', text or '').strip().lower()


def is_query_echo(text: str, query: str) -> bool:
    """
    页面文本是否只是用户问题的回显

    判定（大小写/空白归一后）：
    - 与问题完全相同（可带 "you said" 前缀）
    - 以 "you said " + 问题前 100 字符开头
    - 问题不短于 20 字符时，以问题前 120 字符开头（可带 "you said" 前缀）
    """
    norm_text = _normalize(text)
    norm_query = _normalize(query)

    if not norm_text or not norm_query:
        return False

    stripped = _YOU_SAID.sub('', norm_text)
    if (norm_text == norm_query
            or stripped == norm_query
            or norm_text.startswith('you said ' + norm_query[:ECHO_SAID_PREFIX_CHARS])):
        return True

    # 短问题的答案常以问题本身开头（"python" -> "Python is ..."），只认完全回显
    if len(norm_query) < ECHO_MIN_PREFIX_QUERY_CHARS:
        return False

    head = norm_query[:ECHO_PREFIX_CHARS]
    return norm_text.startswith(head) or stripped.startswith(head)


# ================= 适配器 =================

class BackendAdapter:
    """后端适配器：能力集 {prepare, submit, observe, collect_citations}"""

    backend: str = ""

    def __init__(self, profile: BackendProfile = None):
        if profile is None:
            profile = config_engine.get_profile(self.backend)
            if profile is None:
                raise ConfigurationError(f"未知后端: {self.backend}")
        self.profile = profile

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"

    # ===== 身份 =====

    @property
    def name(self) -> str:
        return self.profile.get("name") or self.backend

    @property
    def owned_by(self) -> str:
        return self.profile.get("owned_by") or self.name

    @property
    def url(self) -> str:
        return self.profile["url"]

    @property
    def deadline(self) -> float:
        return float(self.profile.get("deadline", 120))

    @property
    def isolated_context(self) -> Optional[bool]:
        """None 表示沿用 BROWSER_ISOLATED_CONTEXT"""
        return self.profile.get("isolated_context")

    def _pause(self, key: str):
        """仿人工节奏的短暂停顿"""
        delay = BrowserConstants.get(key) or 0
        if delay > 0:
            time.sleep(delay * random.uniform(0.9, 1.1))

    # ===== 提交前准备 =====

    def prepare(self, source):
        """等待页面稳定、关闭弹窗、滚动到底部（失败不影响后续提交）"""
        self._pause('PAGE_SETTLE_DELAY')

        dismiss = self.profile.get("dismiss_selectors") or []
        if dismiss:
            try:
                clicked = source.run_js(DISMISS_JS, dismiss)
                if clicked:
                    logger.debug(f"[{self.name}] 已关闭 {clicked} 个弹窗")
            except Exception as e:
                logger.debug(f"[{self.name}] 关闭弹窗异常: {e}")
            self._pause('DISMISS_SETTLE_DELAY')

        try:
            source.run_js(SCROLL_BOTTOM_JS)
        except Exception as e:
            logger.debug(f"[{self.name}] 滚动异常: {e}")
        self._pause('SCROLL_SETTLE_DELAY')

    # ===== 提交 =====

    def submit(self, source, query: str) -> bool:
        """按优先级尝试输入框；全部不可用时返回 False"""
        require_opaque = bool(self.profile.get("require_opaque"))
        timeout = BrowserConstants.get('INPUT_SEARCH_TIMEOUT')

        for selector in self.profile.get("input_selectors") or []:
            try:
                elements = source.eles(f'css:{selector}', timeout=timeout)
            except Exception as e:
                logger.debug(f"[{self.name}] 查找输入框失败 [{selector}]: {e}")
                continue

            for ele in elements or []:
                try:
                    if not ele.run_js(USABLE_JS, require_opaque):
                        continue

                    self._inject(source, ele, query)
                    self._confirm(source)
                except Exception as e:
                    logger.debug(f"[{self.name}] 输入框不可用 [{selector}]: {e}")
                    continue

                logger.info_sensitive(f"[{self.name}] ✅ 查询已提交 (输入框: {selector})", query)
                return True

        logger.warning(f"[{self.name}] ⚠️ 未找到可用输入框")
        return False

    def _inject(self, source, ele, query: str):
        """全选 -> 删除 -> 插入文本"""
        ele.click()
        self._pause('CLICK_DELAY')

        source.actions.key_down(Keys.CTRL).key_down('a').key_up('a').key_up(Keys.CTRL)
        source.actions.key_down(Keys.BACKSPACE).key_up(Keys.BACKSPACE)
        self._pause('CLEAR_DELAY')

        # 一次性插入，比逐字输入快得多
        source.run_cdp('Input.insertText', text=query)
        self._pause('INSERT_DELAY')

    def _confirm(self, source):
        """优先点击发送按钮，否则回车"""
        selectors = self.profile.get("send_selectors") or []
        keywords = self.profile.get("send_label_keywords") or []

        if selectors or keywords:
            clicked = source.run_js(CLICK_SEND_JS, {"selectors": selectors, "keywords": keywords})
            if clicked:
                logger.debug(f"[{self.name}] 已点击发送按钮")
                return

        source.actions.key_down(Keys.ENTER).key_up(Keys.ENTER)

    # ===== 观测 =====

    def _read_payload(self) -> Dict[str, Any]:
        return {
            "regions": self.profile.get("answer_regions") or [],
            "strip": self.profile.get("strip_selectors") or [],
            "busy": self.profile.get("busy_selectors") or [],
            "settled": self.profile.get("settled_selectors") or [],
        }

    def select_reading(self, readings: List[str]) -> str:
        """
        逐层读取：同层取最长；当前最佳不足 STREAM_FALLBACK_MIN_CHARS 时才看下一层
        """
        regions = self.profile.get("answer_regions") or []
        fallback_min = BrowserConstants.get('STREAM_FALLBACK_MIN_CHARS')

        best = ""
        for tier in sorted({region.get("tier", 0) for region in regions}):
            if len(best) >= fallback_min:
                break
            for region, text in zip(regions, readings):
                if region.get("tier", 0) == tier and len(text) > len(best):
                    best = text

        return best

    def observe(self, source, original_query: str) -> ObservationSample:
        """读取当前最佳答案文本与忙碌信号；尚无内容时返回空文本"""
        raw = source.run_js(READ_JS, self._read_payload()) or {}

        readings = [str(text or "") for text in raw.get("readings") or []]
        text = self.select_reading(readings)

        if text and len(text) <= int(self.profile.get("min_answer_chars") or 0):
            text = ""

        if text and is_query_echo(text, original_query):
            logger.debug(f"[{self.name}] 忽略问题回显 ({len(text)} 字符)")
            text = ""

        return ObservationSample(
            text=text,
            busy=bool(raw.get("busy")),
            settled=bool(raw.get("settled")),
        )

    # ===== 引用来源 =====

    def _is_excluded_host(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        for excluded in self.profile.get("citation_exclude_hosts") or []:
            if host == excluded or host.endswith("." + excluded):
                return True
        return False

    def parse_citations(self, raw: Dict[str, Any]) -> Tuple[Citation, ...]:
        """去重（按 URL）；没有专用引用标记时回退到外部链接"""
        seen = set()
        citations: List[Citation] = []

        for item in raw.get("primary") or []:
            url = (item.get("url") or "").strip()
            if not url or url in seen:
                continue
            seen.add(url)
            citations.append(Citation(title=(item.get("title") or "").strip() or url, url=url))

        if citations:
            return tuple(citations)

        for item in raw.get("links") or []:
            url = (item.get("url") or "").strip()
            title = (item.get("title") or "").strip()
            if not url or url in seen or self._is_excluded_host(url):
                continue
            if not 2 < len(title) < 200:
                continue
            seen.add(url)
            citations.append(Citation(title=title, url=url))

        return tuple(citations)

    def collect_citations(self, source) -> Tuple[Citation, ...]:
        if not self.profile.get("citation_selector"):
            return ()

        try:
            raw = source.run_js(CITATIONS_JS, {
                "selector": self.profile["citation_selector"],
                "attr": self.profile.get("citation_url_attr") or "href",
            }) or {}
        except Exception as e:
            logger.warning(f"[{self.name}] 引用来源读取失败: {e}")
            return ()

        return self.parse_citations(raw)


class PerplexityAdapter(BackendAdapter):
    backend = "perplexity"


class GeminiAdapter(BackendAdapter):
    backend = "gemini"


ADAPTERS = {
    "perplexity": PerplexityAdapter,
    "gemini": GeminiAdapter,
}


# ================= 模型路由 =================

def resolve_backend(model: Optional[str]) -> Optional[str]:
    """模型名 -> 后端名；无法识别时返回 None"""
    name = (model or ConfigConstants.DEFAULT_MODEL).lower().strip()

    if 'perplexity' in name or name == 'pplx':
        return 'perplexity'
    if 'gemini' in name:
        return 'gemini'
    if name in config_engine.list_backends():
        return name
    return None


def get_adapter(model: Optional[str]) -> BackendAdapter:
    backend = resolve_backend(model)
    if backend is None:
        raise ConfigurationError(f"不支持的模型: {model!r}")

    cls = ADAPTERS.get(backend)
    if cls is not None:
        return cls()

    profile = config_engine.get_profile(backend)
    if profile is None:
        raise ConfigurationError(f"未知后端: {backend}")
    return BackendAdapter(profile)
