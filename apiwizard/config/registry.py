from __future__ import annotations
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from apiwizard.config.models import IDENTIFIER_PATTERN, EndpointConfig
from apiwizard.config.normalize import normalize_endpoint

logger = logging.getLogger(__name__)

EndpointKey = Tuple[str, str]


class EndpointRegistry:
    """
    Loads, validates, and serves EndpointConfig objects.

    Backend: directory of YAML files (one file per endpoint, named
    {owner}__{slug}.yaml). Initialized once at startup via load_all() and
    hot-reloadable via reload() (atomic dict swap under a lock).

    Writes go through upsert(): the file is written to a temp file in the
    same directory and renamed over the target, so a crash mid-save leaves
    either the previous or the new config on disk, never a partial one.
    Upserting the same (owner, slug) twice replaces, never duplicates.
    """

    def __init__(self, config_dir: str = "configs/endpoints") -> None:
        self._config_dir = Path(config_dir)
        self._configs: Dict[EndpointKey, EndpointConfig] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load_all(self) -> None:
        """
        Scan config_dir for *.yaml files and parse each into an EndpointConfig.
        Replaces the in-memory cache atomically on success.

        Raises:
            FileNotFoundError: if config_dir does not exist.
        """
        if not self._config_dir.exists():
            raise FileNotFoundError(
                f"Endpoint config directory not found: {self._config_dir}"
            )

        new_configs: Dict[EndpointKey, EndpointConfig] = {}
        for yaml_path in sorted(self._config_dir.glob("*.yaml")):
            try:
                raw = yaml.safe_load(yaml_path.read_text())
                cfg = normalize_endpoint(raw)
                new_configs[cfg.key] = cfg
                logger.info("Loaded endpoint config: %s/%s (%s)", cfg.owner, cfg.slug, yaml_path.name)
            except (ValidationError, yaml.YAMLError) as exc:
                logger.error("Failed to load endpoint config %s: %s", yaml_path, exc)
                raise

        with self._lock:
            self._configs = new_configs

        logger.info("EndpointRegistry loaded %d endpoint(s).", len(new_configs))

    def reload(self) -> None:
        """Hot-reload all configs from disk without dropping in-flight requests."""
        logger.info("Hot-reloading endpoint configs from %s", self._config_dir)
        self.load_all()

    def get(self, owner: str, slug: str) -> Optional[EndpointConfig]:
        """Return the EndpointConfig for (owner, slug), or None if unknown."""
        with self._lock:
            return self._configs.get((owner, slug))

    def find(self, slug: str) -> List[EndpointConfig]:
        """All endpoints with this slug, across owners, sorted by owner."""
        with self._lock:
            return [cfg for key, cfg in sorted(self._configs.items()) if key[1] == slug]

    def upsert(self, config: EndpointConfig) -> EndpointConfig:
        """
        Persist `config` and publish it. Idempotent per (owner, slug): an
        existing draft is overwritten in place.
        """
        with self._lock:
            self._write(config)
            configs = dict(self._configs)
            configs[config.key] = config
            self._configs = configs
        logger.info("Upserted endpoint %s/%s (status=%s)", config.owner, config.slug, config.status)
        return config

    def finalize(self, owner: str, slug: str) -> Optional[EndpointConfig]:
        """
        Promote a draft to active. Finalizing an already-active endpoint is a
        no-op that returns it unchanged. Returns None for unknown endpoints.
        """
        with self._lock:
            current = self._configs.get((owner, slug))
            if current is None:
                return None
            if current.status == "active":
                return current
            return self.upsert(current.model_copy(update={"status": "active"}))

    def delete(self, owner: str, slug: str) -> bool:
        with self._lock:
            if (owner, slug) not in self._configs:
                return False
            self._path_for(owner, slug).unlink(missing_ok=True)
            configs = dict(self._configs)
            del configs[(owner, slug)]
            self._configs = configs
        logger.info("Deleted endpoint %s/%s", owner, slug)
        return True

    def all_keys(self) -> List[EndpointKey]:
        """Return sorted list of all registered (owner, slug) keys."""
        with self._lock:
            return sorted(self._configs.keys())

    def count(self) -> int:
        with self._lock:
            return len(self._configs)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _path_for(self, owner: str, slug: str) -> Path:
        for part in (owner, slug):
            if not re.fullmatch(IDENTIFIER_PATTERN, part):
                raise ValueError(f"invalid endpoint identifier: {part!r}")
        return self._config_dir / f"{owner}__{slug}.yaml"

    def _write(self, config: EndpointConfig) -> None:
        target = self._path_for(config.owner, config.slug)
        self._config_dir.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json", exclude_none=True)

        fd, tmp_name = tempfile.mkstemp(dir=self._config_dir, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                yaml.safe_dump(data, fh, sort_keys=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
