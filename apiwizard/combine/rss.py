from __future__ import annotations
import hashlib
import json
import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Dict, List, Optional

from apiwizard.combine.concat import CombineResult, interleave
from apiwizard.config.models import RSSFieldMappings, RSSOptions, RSSSourceMapping
from apiwizard.paths.resolver import get_value
from apiwizard.transforms.functions import parse_date

logger = logging.getLogger(__name__)

# Source keys tried, in order, when a mapping leaves an RSS field unset.
_PUBDATE_FALLBACKS = ("pubDate", "date", "created_at")
_GUID_FALLBACKS = ("guid", "id", "link")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, bool)):
        return str(value)
    return json.dumps(value, default=str)


def _lookup(item: Any, configured: Optional[str], fallbacks: tuple) -> Any:
    for path in ((configured,) if configured else fallbacks):
        value = get_value(item, path)
        if value not in (None, ""):
            return value
    return None


def _parse_pub_date(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return parse_date(value)
    except (ValueError, TypeError):
        return None


def map_item(item: Any, mapping: RSSSourceMapping, source_name: str = "") -> Dict[str, Any]:
    """
    Project one source item onto RSS item fields.

    pubDate falls back to 'date' then 'created_at'; guid falls back to 'id'
    then 'link', then to a stable hash of title+link. pubDate is rendered
    as RFC 822 when parseable, else None.
    """
    fm: RSSFieldMappings = mapping.field_mappings
    title = _text(get_value(item, fm.title))
    link = _text(get_value(item, fm.link))

    published = _parse_pub_date(_lookup(item, fm.pub_date, _PUBDATE_FALLBACKS))
    guid = _text(_lookup(item, fm.guid, _GUID_FALLBACKS))
    if not guid:
        guid = hashlib.sha1(f"{title}\n{link}".encode("utf-8")).hexdigest()

    return {
        "title": title,
        "description": _text(get_value(item, fm.description)),
        "link": link,
        "pubDate": format_datetime(published.astimezone(timezone.utc), usegmt=True) if published else None,
        "guid": guid,
        "author": _text(get_value(item, fm.author)) if fm.author else _text(get_value(item, "author")),
        "category": _text(get_value(item, fm.category)) if fm.category else _text(get_value(item, "category")),
        "_sourceId": mapping.source_id,
        "_sourceName": source_name,
    }


def sort_chronological(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Newest first; undated or unparsable items follow in their original order."""
    dated = [(i, _parse_pub_date(item.get("pubDate"))) for i, item in enumerate(items)]
    with_date = [(i, d) for i, d in dated if d is not None]
    without = [i for i, d in dated if d is None]
    # sort() is stable with reverse=True too: equal dates keep listed order.
    with_date.sort(key=lambda pair: pair[1], reverse=True)
    return [items[i] for i, _ in with_date] + [items[i] for i in without]


def merge_rss(
    payloads: Dict[str, Any],
    options: RSSOptions,
    source_names: Optional[Dict[str, str]] = None,
) -> CombineResult:
    """
    Build the merged RSS item list from several source payloads.

    Per enabled source mapping: extract items at `items_path`, truncate to
    `max_items_per_source`, map to RSS fields. Then merge by strategy and
    truncate to `max_total_items`. Sources whose payload is missing or
    whose items path is not an array contribute nothing (with a warning).
    """
    result = CombineResult()
    names = source_names or {}
    per_source: List[List[Dict[str, Any]]] = []

    for mapping in options.source_mappings:
        if not mapping.enabled:
            continue
        payload = payloads.get(mapping.source_id)
        if payload is None:
            result.warnings.append(f"SOURCE_UNAVAILABLE:{mapping.source_id}")
            continue
        items = get_value(payload, mapping.items_path) if mapping.items_path else payload
        if not isinstance(items, list):
            result.warnings.append(
                f"PATH_NOT_FOUND:{mapping.source_id}:{mapping.items_path or '$'} (no item array)"
            )
            continue
        if options.max_items_per_source > 0:
            items = items[: options.max_items_per_source]
        name = names.get(mapping.source_id, mapping.source_id)
        per_source.append([map_item(item, mapping, name) for item in items])

    strategy = options.merge_strategy
    if strategy == "interleaved":
        merged = interleave(per_source)
    else:
        merged = [item for items in per_source for item in items]
        if strategy == "chronological":
            merged = sort_chronological(merged)

    if options.max_total_items > 0:
        merged = merged[: options.max_total_items]

    result.records = merged
    return result


def render_rss(options: RSSOptions, items: List[Dict[str, Any]], build_date: Optional[datetime] = None) -> str:
    """Serialize a channel and its items as an RSS 2.0 document."""
    rss = ET.Element("rss", {"version": "2.0"})
    channel = ET.SubElement(rss, "channel")
    ET.SubElement(channel, "title").text = options.channel_title
    ET.SubElement(channel, "description").text = options.channel_description
    ET.SubElement(channel, "link").text = options.channel_link
    ET.SubElement(channel, "lastBuildDate").text = format_datetime(
        build_date or datetime.now(timezone.utc), usegmt=True
    )

    for item in items:
        node = ET.SubElement(channel, "item")
        for key in ("title", "description", "link"):
            ET.SubElement(node, key).text = _text(item.get(key))
        ET.SubElement(node, "guid", {"isPermaLink": "false"}).text = _text(item.get("guid"))
        if item.get("pubDate"):
            ET.SubElement(node, "pubDate").text = _text(item["pubDate"])
        for key in ("author", "category"):
            if item.get(key):
                ET.SubElement(node, key).text = _text(item[key])
        if item.get("_sourceName"):
            ET.SubElement(node, "source", {"url": options.channel_link}).text = _text(item["_sourceName"])

    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(rss, encoding="unicode")
