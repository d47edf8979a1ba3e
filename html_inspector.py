"""
html_inspector.py - 页面诊断

提交失败时把当前页面 HTML 整理成简短摘要：
- 各候选输入框选择器的命中数
- 页面上的交互元素概览
- 清理后的 HTML（可写入 DEBUG_SNAPSHOT_DIR 供事后分析）
"""

import re
import logging
from typing import Dict, List, Any

import bs4
from bs4 import BeautifulSoup


logger = logging.getLogger('html_inspector')


class PageInspector:
    """HTML 诊断器"""

    TAGS_TO_REMOVE = ['script', 'style', 'svg', 'path', 'noscript', 'link', 'meta', 'iframe']

    INTERACTIVE_TAGS = ['textarea', 'input', 'button', '[contenteditable]', '[role="textbox"]']

    ALLOWED_ATTRS = {
        'id', 'class', 'name', 'type', 'placeholder', 'aria-label',
        'role', 'contenteditable', 'data-testid', 'disabled',
    }

    def __init__(self, max_chars: int = 200000, preview_chars: int = 120):
        self.max_chars = max_chars
        self.preview_chars = preview_chars

    def summarize(self, html: str, input_selectors: List[str] = None) -> Dict[str, Any]:
        soup = BeautifulSoup(html or "", 'html.parser')

        title = soup.title.get_text(strip=True) if soup.title else ""

        matches = {}
        for selector in input_selectors or []:
            try:
                matches[selector] = len(soup.select(selector))
            except Exception as e:
                logger.debug(f"选择器无法在静态 HTML 上求值 [{selector}]: {e}")
                matches[selector] = None

        interactive = []
        for selector in self.INTERACTIVE_TAGS:
            for element in soup.select(selector):
                interactive.append(self._describe(element))

        return {
            "title": title,
            "html_length": len(html or ""),
            "input_matches": matches,
            "interactive": list(dict.fromkeys(interactive)),
        }

    def _describe(self, element) -> str:
        attrs = []
        for key in ('id', 'class', 'role', 'aria-label', 'placeholder', 'contenteditable'):
            value = element.get(key)
            if value is None:
                continue
            if isinstance(value, list):
                value = " ".join(value)
            attrs.append(f'{key}="{value}"')

        text = element.get_text(" ", strip=True)
        if len(text) > self.preview_chars:
            text = text[:self.preview_chars] + "..."

        head = " ".join([element.name] + attrs)
        return f"<{head}> {text}".strip()

    def format_summary(self, summary: Dict[str, Any]) -> str:
        lines = [f"页面: {summary['title'] or '(无标题)'} ({summary['html_length']} 字符)"]

        for selector, count in summary["input_matches"].items():
            lines.append(f"  {selector}: {'?' if count is None else count}")

        if summary["interactive"]:
            lines.append(f"交互元素 ({len(summary['interactive'])}):")
            lines.extend(f"  {item}" for item in summary["interactive"][:20])
        else:
            lines.append("未发现任何交互元素")

        return "\n".join(lines)

    def clean(self, html: str) -> str:
        """去掉脚本/样式/注释和无关属性，保留结构"""
        soup = BeautifulSoup(html or "", 'html.parser')

        for tag in soup(self.TAGS_TO_REMOVE):
            tag.decompose()

        for element in soup.find_all(string=lambda t: isinstance(t, bs4.element.Comment)):
            element.extract()

        for tag in soup.find_all(True):
            for attr in list(tag.attrs):
                if attr not in self.ALLOWED_ATTRS:
                    del tag.attrs[attr]

        cleaned = str(soup.body) if soup.body else str(soup)
        cleaned = re.sub(r'\s+', ' ', cleaned).strip()

        if len(cleaned) > self.max_chars:
            cleaned = cleaned[:self.max_chars] + "<!-- TRUNCATED -->"

        return cleaned


page_inspector = PageInspector()
