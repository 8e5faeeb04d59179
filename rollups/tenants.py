from __future__ import annotations
from types import MappingProxyType
from collections.abc import Mapping
from typing import Iterable, Iterator, List
import logging
import orjson
from rollups.errors import InvalidTenantError
from rollups.schemas import TenantConfig

logger = logging.getLogger(__name__)

class TenantSnapshot(Mapping):
    """Read-only view of every tenant's config, keyed by lowercase id."""

    def __init__(self, configs: Iterable[TenantConfig] = ()):
        self._configs = MappingProxyType({c.application_id: c for c in configs})

    def __getitem__(self, application_id: str) -> TenantConfig:
        return self._configs[application_id.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._configs)

    def __len__(self) -> int:
        return len(self._configs)

    def __contains__(self, application_id) -> bool:
        return isinstance(application_id, str) and application_id.lower() in self._configs

def load_tenant_configs(path: str) -> List[TenantConfig]:
    with open(path, "rb") as f:
        raw = orjson.loads(f.read())
    if isinstance(raw, dict):
        raw = raw.get("tenants", [])
    return [TenantConfig.model_validate(c) for c in raw]

class TenantRegistry:
    """Holds the current snapshot. Refreshing builds a new snapshot and swaps
    the reference, so readers never take a lock."""

    def __init__(self, configs: Iterable[TenantConfig] = ()):
        self._snapshot = TenantSnapshot(configs)

    def snapshot(self) -> TenantSnapshot:
        return self._snapshot

    def replace(self, configs: Iterable[TenantConfig]) -> TenantSnapshot:
        snap = TenantSnapshot(configs)
        self._snapshot = snap
        logger.info("tenant config snapshot replaced tenants=%d", len(snap))
        return snap

    def refresh_from_file(self, path: str) -> TenantSnapshot:
        return self.replace(load_tenant_configs(path))

    def is_valid(self, application_id: str) -> bool:
        return application_id in self._snapshot

    def get(self, application_id: str) -> TenantConfig:
        try:
            return self._snapshot[application_id]
        except KeyError:
            raise InvalidTenantError(application_id) from None
