"""Token decimal-places resolver.

Resolution order: storage cache → chain bank API → chain directory → static
heuristic. The resolver never fails; the heuristic always yields a value.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from relaymon.core.config import DecimalsConfig, get_settings
from relaymon.storage.base import Storage

logger = structlog.stdlib.get_logger()

# Well-known native denoms whose exponent is fixed.
NATIVE_DECIMALS: dict[str, int] = {
    "uphoton": 6,
    "peaka": 18,
    "ulore": 6,
    "uosmo": 6,
    "aplanq": 18,
    "uatom": 6,
    "ujuno": 6,
    "ustars": 6,
    "uakt": 6,
    "uluna": 6,
    "uusd": 6,
    "ukrw": 6,
    "uion": 6,
    "ustrd": 6,
    "uhuahua": 6,
    "ucmdx": 6,
}

_BANK = "cosmos/bank/v1beta1"


def heuristic_decimals(denom: str, native: dict[str, int] | None = None) -> int:
    """Static fallback: native table, then atto-prefixed (``a`` but not ``au``) → 18, else 6."""
    table = native if native is not None else NATIVE_DECIMALS
    if denom in table:
        return table[denom]
    if denom.startswith("a") and not denom.startswith("au"):
        return 18
    return 6


def display_exponent(entry: dict[str, Any], denom: str) -> int | None:
    """Exponent of the ``display`` unit of a metadata/asset entry matching ``denom``.

    Cosmos bank metadata and chain-registry assets share this shape::

        {"base": "uosmo", "display": "osmo",
         "denom_units": [{"denom": "uosmo", "exponent": 0},
                         {"denom": "osmo", "exponent": 6}]}
    """
    units = entry.get("denom_units")
    if not isinstance(units, list):
        return None
    if entry.get("base") != denom and not any(
        isinstance(u, dict) and u.get("denom") == denom for u in units
    ):
        return None

    display = entry.get("display")
    for unit in units:
        if isinstance(unit, dict) and unit.get("denom") == display:
            exponent = unit.get("exponent")
            if isinstance(exponent, int) and exponent >= 0:
                return exponent
    return None


class DecimalResolver:
    """Resolves and caches the decimal places of (chain, denom) pairs.

    Tier 2–4 answers are written back through the storage collaborator, so a
    second ``resolve`` for the same pair never touches the network.
    """

    def __init__(
        self,
        storage: Storage | None = None,
        config: DecimalsConfig | None = None,
        client: httpx.AsyncClient | None = None,
        user_agent: str | None = None,
    ) -> None:
        settings = get_settings()
        self._storage = storage
        self._config = config or settings.decimals
        self._client = client
        self._owns_client = client is None
        self._user_agent = user_agent or settings.metrics.user_agent
        self._native = {**NATIVE_DECIMALS, **self._config.native_decimals}
        self._network_calls = 0

    @property
    def network_calls(self) -> int:
        """Outgoing HTTP requests issued so far."""
        return self._network_calls

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.lookup_timeout_secs),
                headers={"User-Agent": self._user_agent},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def resolve(self, chain_id: str, denom: str) -> int:
        """Return the decimal places for ``denom`` on ``chain_id``. Never raises."""
        cached = await self._cached(chain_id, denom)
        if cached is not None:
            return cached

        decimals = await self._from_chain(chain_id, denom)
        tier = "chain"
        if decimals is None:
            decimals = await self._from_directory(chain_id, denom)
            tier = "directory"
        if decimals is None:
            decimals = heuristic_decimals(denom, self._native)
            tier = "heuristic"

        logger.debug("decimals_resolved", chain=chain_id, denom=denom, decimals=decimals, tier=tier)
        await self._store(chain_id, denom, decimals)
        return decimals

    async def invalidate(self, chain_id: str, denom: str) -> bool:
        """Drop a cached entry so the next resolve goes back to the network."""
        if self._storage is None:
            return False
        return await self._storage.delete_decimals(chain_id, denom)

    # ── Cache ──

    async def _cached(self, chain_id: str, denom: str) -> int | None:
        if self._storage is None:
            return None
        try:
            return await self._storage.get_decimals(chain_id, denom)
        except Exception as exc:
            logger.debug("decimals_cache_read_failed", chain=chain_id, denom=denom, error=str(exc))
            return None

    async def _store(self, chain_id: str, denom: str, decimals: int) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.set_decimals(chain_id, denom, decimals)
        except Exception as exc:
            logger.debug("decimals_cache_write_failed", chain=chain_id, denom=denom, error=str(exc))

    # ── Remote lookups ──

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> Any | None:
        self._network_calls += 1
        try:
            response = await self._get_client().get(
                url,
                params=params,
                timeout=httpx.Timeout(self._config.lookup_timeout_secs),
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("decimals_lookup_failed", url=url, error=str(exc))
            return None

    async def _from_chain(self, chain_id: str, denom: str) -> int | None:
        rest = self._config.chain_rest_endpoints.get(chain_id)
        if not rest:
            return None
        rest = rest.rstrip("/")

        body = await self._get_json(f"{rest}/{_BANK}/denoms_metadata/{denom}")
        if isinstance(body, dict) and isinstance(body.get("metadata"), dict):
            exponent = display_exponent(body["metadata"], denom)
            if exponent is not None:
                return exponent

        body = await self._get_json(f"{rest}/{_BANK}/denoms_metadata")
        if isinstance(body, dict) and isinstance(body.get("metadatas"), list):
            for entry in body["metadatas"]:
                if isinstance(entry, dict):
                    exponent = display_exponent(entry, denom)
                    if exponent is not None:
                        return exponent

        if denom in self._native:
            body = await self._get_json(f"{rest}/{_BANK}/supply/by_denom", params={"denom": denom})
            if isinstance(body, dict) and isinstance(body.get("amount"), dict):
                return self._native[denom]

        return None

    async def _from_directory(self, chain_id: str, denom: str) -> int | None:
        name = self._config.directory_names.get(chain_id, chain_id)
        url = f"{self._config.directory_url.rstrip('/')}/{name}/assetlist"
        body = await self._get_json(url)
        if not isinstance(body, dict) or not isinstance(body.get("assets"), list):
            return None
        for asset in body["assets"]:
            if isinstance(asset, dict):
                exponent = display_exponent(asset, denom)
                if exponent is not None:
                    return exponent
        return None
