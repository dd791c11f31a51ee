from __future__ import annotations
import copy
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

from apiwizard.config.models import DataSource
from apiwizard.connectors.base import AsyncBaseConnector

_ATOM = "{http://www.w3.org/2005/Atom}"
_RSS_FIELDS = ("title", "description", "link", "pubDate", "guid", "author", "category")


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(node: ET.Element, name: str) -> str:
    for child in node:
        if _local(child.tag) == name:
            return (child.text or "").strip()
    return ""


def _atom_link(entry: ET.Element) -> str:
    fallback = ""
    for link in entry.findall(f"{_ATOM}link"):
        rel = link.get("rel", "alternate")
        if rel == "alternate":
            return link.get("href", "")
        fallback = fallback or link.get("href", "")
    return fallback


def _atom_entry(entry: ET.Element) -> Dict[str, str]:
    author = entry.find(f"{_ATOM}author")
    category = entry.find(f"{_ATOM}category")
    return {
        "title": _child_text(entry, "title"),
        "description": _child_text(entry, "summary") or _child_text(entry, "content"),
        "link": _atom_link(entry),
        "pubDate": _child_text(entry, "published") or _child_text(entry, "updated"),
        "guid": _child_text(entry, "id"),
        "author": _child_text(author, "name") if author is not None else "",
        "category": category.get("term", "") if category is not None else "",
    }


def parse_feed(text: str) -> List[Dict[str, str]]:
    """
    Parse an RSS 2.0 or Atom document into a list of item dicts keyed by
    the RSS item field names (title, description, link, pubDate, guid,
    author, category). Missing elements become "".

    Raises:
        ValueError: if the document is not well-formed XML.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ValueError(f"invalid feed XML: {exc}") from exc

    if _local(root.tag) == "feed":
        return [_atom_entry(e) for e in root.iter(f"{_ATOM}entry")]
    return [
        {name: _child_text(item, name) for name in _RSS_FIELDS}
        for item in root.iter()
        if _local(item.tag) == "item"
    ]


class RssConnector(AsyncBaseConnector):
    """
    RSS / Atom feed connector. The payload is the list of feed items.

    Demo mode  (rss_config.url == "mock"): returns a copy of sample_data.
    """

    source_type = "rss"

    async def fetch_data(self, source: DataSource, params: Dict[str, str]) -> Any:
        url: Optional[str] = source.rss_config.url if source.rss_config else None
        if self.is_mock(source, url):
            return copy.deepcopy(source.sample_data)

        session = await self._get_session()
        async with session.get(url) as resp:
            resp.raise_for_status()
            text = await resp.text()
        items = parse_feed(text)
        self._logger.debug("Parsed %d feed item(s) from %s", len(items), url)
        return items
