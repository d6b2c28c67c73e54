from __future__ import annotations

import logging

import requests
from bs4 import BeautifulSoup

from jobledger.types import JobCapture, utcnow

logger = logging.getLogger(__name__)


USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) jobledger/0.1 (+job capture)"


def _download(url: str, timeout_sec: float) -> BeautifulSoup | None:
    try:
        response = requests.get(url, timeout=timeout_sec, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Failed to fetch job URL %s: %s", url, exc)
        return None

    soup = BeautifulSoup(response.text, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.extract()
    return soup


def _plain_text(soup: BeautifulSoup) -> str:
    lines = [line.strip() for line in soup.get_text("\n").splitlines() if line.strip()]
    return "\n".join(lines)


def _meta(soup: BeautifulSoup, prop: str) -> str | None:
    tag = soup.find("meta", attrs={"property": prop}) or soup.find("meta", attrs={"name": prop})
    content = tag.get("content") if tag else None
    return content.strip() if isinstance(content, str) and content.strip() else None


def fetch_job_text(url: str, timeout_sec: float = 30) -> str:
    soup = _download(url, timeout_sec)
    return _plain_text(soup) if soup is not None else ""


def fetch_job_capture(url: str, timeout_sec: float = 30) -> JobCapture | None:
    """Build a capture from a posting page, or ``None`` when nothing usable came back."""
    soup = _download(url, timeout_sec)
    if soup is None:
        return None
    text = _plain_text(soup)
    if not text:
        return None

    role = _meta(soup, "og:title")
    if role is None and soup.title and soup.title.string:
        role = soup.title.string.strip() or None
    return JobCapture(
        text=text,
        company=_meta(soup, "og:site_name"),
        role=role,
        source_url=url,
        capture_method="url_fetch",
        fetched_at=utcnow(),
    )
