from __future__ import annotations

import html
import logging
import os
import re
from datetime import datetime
from typing import Callable, Dict, List
from xml.etree import ElementTree as ET

import requests

from weather_data import ForecastProxyError, utc_now

MARINE_RSS_URL = os.getenv("MARINE_RSS_URL", "https://weather.gc.ca/rss/marine/06400_e.xml")
MARINE_REQUEST_TIMEOUT_SECONDS = float(os.getenv("MARINE_REQUEST_TIMEOUT_SECONDS", "15"))
MARINE_REQUEST_HEADERS = {
    "Accept": "application/xml, text/xml, */*",
    "User-Agent": "HoweSoundForecast/1.0",
}
FEED_SNIPPET_CHARS = 2000
LOGGER = logging.getLogger("howe_forecast.marine")

# First match wins; warnings must precede winds so "Wind warning" lands in warnings.
SECTION_KEYWORDS = (
    ("warnings", ("warning", "watch")),
    ("extended", ("extended",)),
    ("winds", ("wind",)),
    ("weather", ("weather", "visibility")),
    ("forecast", ("forecast", "synopsis")),
)


class MarineFeedError(ForecastProxyError):
    """Raised when the marine feed cannot be fetched or parsed."""


def fetch_marine_feed(
    url: str = MARINE_RSS_URL,
    timeout: float = MARINE_REQUEST_TIMEOUT_SECONDS,
    http_get: Callable[..., requests.Response] | None = None,
) -> str:
    getter = http_get or requests.get
    try:
        response = getter(url, headers=MARINE_REQUEST_HEADERS, timeout=timeout)
    except requests.RequestException as exc:
        raise MarineFeedError("Failed to fetch marine forecast feed") from exc
    if response.status_code >= 400 or not response.text:
        raise MarineFeedError(f"Failed to fetch marine forecast feed (HTTP {response.status_code})")
    return response.text


def classify_entry_title(title: str) -> str | None:
    lowered = title.lower()
    for section, keywords in SECTION_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return section
    return None


def clean_html(markup: str) -> str:
    """Flatten an entry summary to plain multi-line text."""
    text = html.unescape(markup)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>\s*<p[^>]*>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = text.replace("\xa0", " ")
    text = re.sub(r"[^\S\n]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\bStay connected\b.*", "", text, flags=re.IGNORECASE | re.DOTALL)
    return text.strip()


def _child_text(element: ET.Element, tag: str) -> str:
    child = element.find(f"{{*}}{tag}")
    if child is None or child.text is None:
        return ""
    return child.text.strip() if tag != "summary" else child.text


def parse_marine_feed(xml_text: str, clock: Callable[[], datetime] = utc_now) -> Dict[str, object]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise MarineFeedError("Failed to parse XML feed") from exc
    if not root.tag.endswith("feed"):
        raise MarineFeedError("Invalid feed structure")

    sections: Dict[str, Dict[str, str]] = {}
    entry_titles: List[str] = []
    for entry in root.findall("{*}entry"):
        title = _child_text(entry, "title")
        entry_titles.append(title)
        section = classify_entry_title(title)
        if section is None:
            continue
        sections[section] = {
            "title": title,
            "updated": _child_text(entry, "updated"),
            "content": clean_html(_child_text(entry, "summary")),
        }

    LOGGER.debug("Parsed marine feed entries=%d sections=%s", len(entry_titles), sorted(sections))
    return {
        "title": _child_text(root, "title"),
        "updated": _child_text(root, "updated"),
        "sections": sections,
        "entry_titles": entry_titles,
        "generated_at": clock().replace(microsecond=0).isoformat(),
    }


def load_marine_forecast(
    url: str = MARINE_RSS_URL,
    http_get: Callable[..., requests.Response] | None = None,
    clock: Callable[[], datetime] = utc_now,
    debug: bool = False,
) -> Dict[str, object]:
    raw = fetch_marine_feed(url, http_get=http_get)
    result = parse_marine_feed(raw, clock=clock)
    if debug:
        result["debug"] = {
            "feed_length": len(raw),
            "feed_snippet": raw[:FEED_SNIPPET_CHARS],
        }
    return result
