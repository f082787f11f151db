"""Attachment discovery and the download -> upload -> link -> comment chain."""

import logging
from typing import Callable, Iterable, List, Optional
from urllib.parse import unquote, urlparse

import httpx

from errors import ExporterError
from services.text_format import extract_urls

logger = logging.getLogger(__name__)

LogSink = Callable[[str, str], None]

FILE_EXTENSIONS = {
    "pdf", "png", "jpg", "jpeg", "gif", "webp", "svg", "bmp", "tif", "tiff", "heic",
    "doc", "docx", "xls", "xlsx", "ppt", "pptx", "odt", "ods", "rtf", "txt", "csv",
    "zip", "rar", "7z", "gz", "tar",
    "mp4", "mov", "avi", "webm", "mp3", "wav", "m4a",
    "json", "xml", "psd", "ai", "eps", "sketch", "fig",
}

FILE_HOST_MARKERS = (
    "files.productive.io",
    "productive-files",
    "s3.amazonaws.com",
    "storage.googleapis.com",
    "dl.dropboxusercontent.com",
    "usercontent",
    "cloudfront.net",
    "uploads.linear.app",
)

WEB_PAGE_DOMAINS = (
    "app.productive.io",
    "google.com",
    "github.com",
    "gitlab.com",
    "figma.com",
    "youtube.com",
    "youtu.be",
    "linear.app",
    "notion.so",
    "atlassian.net",
    "slack.com",
    "loom.com",
    "miro.com",
)


def _host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def _matches_domain(host: str, domain: str) -> bool:
    return host == domain or host.endswith("." + domain)


def url_extension(url: str) -> str:
    path = unquote(urlparse(url).path)
    name = path.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def is_likely_web_page(url: str) -> bool:
    host = _host(url)
    return any(_matches_domain(host, domain) for domain in WEB_PAGE_DOMAINS)


def is_likely_attachment(url: str) -> bool:
    """File-extension and file-host heuristics; known web apps never count."""
    host = _host(url)
    if any(marker in host for marker in FILE_HOST_MARKERS):
        return True
    if is_likely_web_page(url):
        return False
    return url_extension(url) in FILE_EXTENSIONS


def discover_attachment_urls(description_text: str, comment_texts: Iterable[str]) -> List[str]:
    """URLs in the description and comments not already spelled out in a comment."""
    comment_texts = list(comment_texts)
    urls = extract_urls(description_text, *comment_texts)
    return [url for url in urls if not any(url in text for text in comment_texts)]


async def attach_url(productive, linear, issue_id: str, url: str, log: LogSink) -> str:
    """Attach one URL to an issue. Never raises.

    Likely files: download and upload the bytes, else attach the URL as a
    link record, else post the URL as a comment. Web pages start at the link
    stage. Returns the stage that succeeded ("upload", "link", "comment") or
    "failed".
    """
    filename: Optional[str] = None

    if is_likely_attachment(url):
        file = await productive.download_url_buffer(url, log)
        if file is not None:
            filename = file.filename or url.rsplit("/", 1)[-1] or "attachment"
            try:
                await linear.create_attachment_from_buffer(issue_id, file, filename)
                log(f"Uploaded attachment {filename}", "info")
                return "upload"
            except (ExporterError, httpx.HTTPError) as e:
                log(f"Upload of {filename} failed, attaching as link: {e}", "warning")

    try:
        attachment_id = await linear.create_attachment(issue_id, url, filename)
        if attachment_id:
            return "link"
        log(f"Linear returned no attachment for {url}, posting as comment", "warning")
    except (ExporterError, httpx.HTTPError) as e:
        log(f"Attaching link {url} failed, posting as comment: {e}", "warning")

    try:
        if await linear.add_attachment_link_as_comment(issue_id, url, filename):
            return "comment"
        log(f"Could not post attachment link {url}", "error")
    except (ExporterError, httpx.HTTPError) as e:
        log(f"Could not post attachment link {url}: {e}", "error")
    return "failed"
