"""Text helpers: HTML to markdown-ish plain text, comment display, URLs."""

import re
from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bs4 import BeautifulSoup, NavigableString, Tag

from config import settings
from errors import ConfigurationError
from models.productive import Person

URL_REGEX = re.compile(r"https?://[^\s<>\"'()\[\]{}|\\^`]+", flags=re.IGNORECASE)
_TRAILING_PUNCTUATION = ".,;:!?*_~"
_BLOCK_TAGS = {"p", "div", "section", "article", "blockquote", "pre", "ul", "ol", "table", "tr", "h1", "h2", "h3", "h4", "h5", "h6"}
_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Mask a credential for logging: ``abcd***``."""
    if not value:
        return "NOT SET"
    return value[:visible] + "***"


def _render(node, parts: List[str]) -> None:
    if isinstance(node, NavigableString):
        parts.append(str(node))
        return
    if not isinstance(node, Tag):
        return

    name = node.name.lower()
    if name in ("script", "style"):
        return
    if name == "br":
        parts.append("\n")
        return
    if name == "img":
        src = node.get("src")
        if src:
            parts.append(f"![{node.get('alt') or ''}]({src})")
        return
    if name == "a":
        href = node.get("href")
        text = node.get_text().strip()
        if href and text and text != href:
            parts.append(f"[{text}]({href})")
        elif href:
            parts.append(href)
        else:
            parts.append(text)
        return

    prefix = ""
    if name == "li":
        prefix = "- "
    elif name in ("strong", "b"):
        prefix = "**"
    elif name in ("em", "i"):
        prefix = "_"

    if name in _BLOCK_TAGS or name == "li":
        parts.append("\n")
    parts.append(prefix)
    for child in node.children:
        _render(child, parts)
    if name in ("strong", "b", "em", "i"):
        parts.append(prefix)
    if name in _BLOCK_TAGS:
        parts.append("\n")


def html_to_plain_text(html: Optional[str]) -> str:
    """Convert Productive rich text to markdown-flavoured plain text."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    parts: List[str] = []
    for child in soup.children:
        _render(child, parts)
    text = "".join(parts).replace("\xa0", " ")
    # Collapse runs of blank lines and trailing spaces
    lines = [line.rstrip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def format_comment_timestamp(moment: Optional[datetime], tz_name: Optional[str] = None) -> str:
    if moment is None:
        return "Unknown date"
    name = tz_name or settings.display_timezone
    try:
        zone = ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown display timezone: {name}", setting="display_timezone") from e
    return moment.astimezone(zone).strftime("%d.%m.%Y %H:%M")


def format_comment(author: Person, moment: Optional[datetime], body_text: str) -> str:
    """Display string used in the CSV and replayed to Linear."""
    who = f"**{author.name}**"
    if author.email:
        who += f" ({author.email})"
    return f"{who} - {format_comment_timestamp(moment)}\n\n{body_text}".rstrip()


def task_origin_url(organization_id: str, task_id: str) -> str:
    """Canonical Productive URL for a task."""
    base = settings.productive_app_url.rstrip("/")
    return f"{base}/{organization_id}/tasks/{task_id}"


def extract_urls(*texts: Optional[str]) -> List[str]:
    """Unique http(s) URLs in order of first appearance."""
    seen = set()
    urls = []
    for text in texts:
        if not text:
            continue
        for match in URL_REGEX.findall(text):
            url = match.rstrip(_TRAILING_PUNCTUATION)
            if url and url not in seen:
                seen.add(url)
                urls.append(url)
    return urls


def strip_markdown_links(text: str) -> str:
    """``[name](url)`` -> ``name``; also drops dangling ``](url)`` fragments."""
    text = _MARKDOWN_LINK.sub(r"\1", text)
    return re.sub(r"\]\([^)]+\)", "", text)
