from __future__ import annotations
import copy
import io
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from apiwizard.config.models import DataSource
from apiwizard.connectors.base import AsyncBaseConnector


def parse_csv(text: str) -> List[Dict[str, Any]]:
    """CSV text → list of row dicts. Empty cells become None."""
    if not text.strip():
        return []
    df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
    df = df.rename(columns=lambda c: str(c).strip())
    return [
        {k: (v.strip() if v.strip() != "" else None) for k, v in row.items()}
        for row in df.to_dict(orient="records")
    ]


def _detect_format(declared: str, location: str, content_type: str = "") -> str:
    if declared in ("json", "csv"):
        return declared
    if "csv" in content_type or location.lower().endswith(".csv"):
        return "csv"
    return "json"


class FileConnector(AsyncBaseConnector):
    """
    JSON or CSV file connector.

    file_config.url may be an http(s) URL or a local path (file:// or bare).
    Format comes from file_config.format, else the response content type,
    else the file extension; anything not CSV is parsed as JSON.

    Demo mode  (file_config.url == "mock"): returns a copy of sample_data.
    """

    source_type = "file"

    async def fetch_data(self, source: DataSource, params: Dict[str, str]) -> Any:
        cfg = source.file_config
        url: Optional[str] = cfg.url if cfg else None
        if self.is_mock(source, url):
            return copy.deepcopy(source.sample_data)

        if url.startswith(("http://", "https://")):
            session = await self._get_session()
            async with session.get(url) as resp:
                resp.raise_for_status()
                text = await resp.text()
                content_type = resp.headers.get("Content-Type", "")
        else:
            path = Path(url[len("file://"):] if url.startswith("file://") else url)
            text = path.read_text(encoding="utf-8")
            content_type = ""

        if _detect_format(cfg.format, url, content_type) == "csv":
            return parse_csv(text)
        return json.loads(text)
