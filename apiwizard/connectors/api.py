from __future__ import annotations
import base64
import copy
import os
from typing import Any, Dict
from urllib.parse import quote

from apiwizard.config.models import ApiSourceConfig, DataSource
from apiwizard.connectors.base import AsyncBaseConnector
from apiwizard.errors import MissingParameterError


def _credential(ref: str) -> str:
    """'env://VAR_NAME' reads the environment; anything else is a raw token (dev/mock)."""
    if ref.startswith("env://"):
        return os.environ.get(ref[6:], "")
    return ref


def build_url(source: DataSource, params: Dict[str, str]) -> str:
    """
    Substitute '{placeholder}' tokens in the source URL from `params`.

    A mapping without a supplied value falls back to its default_value; a
    required mapping with neither raises MissingParameterError. Values are
    URL-quoted.
    """
    cfg = source.api_config
    url = cfg.url
    for mapping in cfg.parameter_mappings:
        value = params.get(mapping.query_param)
        if value in (None, ""):
            value = mapping.default_value
        if value in (None, ""):
            if mapping.required:
                raise MissingParameterError(source.id, mapping.query_param)
            continue
        url = url.replace("{" + mapping.url_placeholder + "}", quote(str(value), safe=""))
    return url


def auth_headers(cfg: ApiSourceConfig) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    if cfg.auth_type == "bearer" and cfg.auth_token:
        headers["Authorization"] = f"Bearer {_credential(cfg.auth_token)}"
    elif cfg.auth_type == "basic" and cfg.auth_token:
        encoded = base64.b64encode(_credential(cfg.auth_token).encode()).decode()
        headers["Authorization"] = f"Basic {encoded}"
    elif cfg.auth_type == "api_key" and cfg.api_key_header and cfg.api_key_value:
        headers[cfg.api_key_header] = _credential(cfg.api_key_value)
    # Custom headers win over generated ones.
    headers.update(cfg.headers)
    return headers


class ApiConnector(AsyncBaseConnector):
    """
    REST/JSON connector.

    Demo mode  (api_config.url == "mock"): returns a copy of sample_data.

    Production mode: issues api_config.method against the substituted URL
    with auth and custom headers; api_config.body is sent as JSON.
    """

    source_type = "api"

    def check_parameters(self, source: DataSource, params: Dict[str, str]) -> None:
        if source.api_config is not None:
            build_url(source, params)

    async def fetch_data(self, source: DataSource, params: Dict[str, str]) -> Any:
        cfg = source.api_config
        if self.is_mock(source, cfg.url if cfg else None):
            return copy.deepcopy(source.sample_data)

        url = build_url(source, params)
        session = await self._get_session()
        kwargs: Dict[str, Any] = {"headers": auth_headers(cfg)}
        if cfg.body is not None and cfg.method.upper() != "GET":
            kwargs["json"] = cfg.body

        self._logger.debug("%s %s", cfg.method.upper(), url)
        async with session.request(cfg.method.upper(), url, **kwargs) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)
