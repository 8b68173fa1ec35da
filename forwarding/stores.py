"""Read-only directory of merchant store configurations."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError

from .config import StoreConfig

logger = logging.getLogger(__name__)


class StoreConfigError(RuntimeError):
    pass


def _normalize_store_payload(payload: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(payload, list):
        for item in payload:
            if isinstance(item, dict):
                yield dict(item)
    elif isinstance(payload, dict):
        if "store_id" in payload and "payout_recipient" in payload:
            yield dict(payload)
        else:
            for store_id, value in payload.items():
                if isinstance(value, dict):
                    candidate = dict(value)
                    candidate.setdefault("store_id", store_id)
                    yield candidate


class StoreDirectory:
    """Store configs keyed by store id, loaded once and never mutated by the core."""

    def __init__(self, stores: Optional[Iterable[StoreConfig]] = None) -> None:
        self._stores: Dict[str, StoreConfig] = {}
        for store in stores or []:
            if store.store_id in self._stores:
                logger.warning("Skipping duplicate store config %s", store.store_id)
                continue
            self._stores[store.store_id] = store

    @classmethod
    def from_file(cls, path: Path) -> "StoreDirectory":
        resolved = Path(path).expanduser()
        if not resolved.exists():
            logger.warning("Store config file %s not found; no stores configured", resolved)
            return cls()
        try:
            with resolved.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except json.JSONDecodeError as exc:
            raise StoreConfigError(f"Failed to parse store config file {resolved}: {exc}") from exc
        except OSError as exc:
            raise StoreConfigError(f"Unable to read store config file {resolved}: {exc}") from exc

        stores = []
        for candidate in _normalize_store_payload(payload):
            try:
                stores.append(StoreConfig.model_validate(candidate))
            except ValidationError as exc:
                logger.error("Invalid store config entry in %s: %s", resolved, exc)
        directory = cls(stores)
        logger.info("Loaded %s store configs from %s", len(directory), resolved)
        return directory

    def get(self, store_id: str) -> Optional[StoreConfig]:
        return self._stores.get(store_id)

    def __len__(self) -> int:
        return len(self._stores)

    def __contains__(self, store_id: object) -> bool:
        return store_id in self._stores
