"""
Meteora DLMM API Client.
Handles fetching position metadata, pair metadata and owner position listings.
"""
from __future__ import annotations
import logging
from typing import Optional, Dict, List, Any, Union

import httpx
from cachetools import TTLCache

from dlmm_tracker.core.config import settings
from dlmm_tracker.core.exceptions import MalformedPayloadError, RateLimitError, SourceError
from dlmm_tracker.services.fetcher import CancelToken, RateLimitedFetcher

logger = logging.getLogger(__name__)


class MeteoraAPIClient:
    """
    Async client for the Meteora DLMM read API.
    Implements retry on rate limits and caching.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.meteora_api_base_url).rstrip("/")
        self.fetcher = fetcher or RateLimitedFetcher()
        self._transport = transport

        # TTL Caches
        self._pair_cache: TTLCache = TTLCache(
            maxsize=1000,
            ttl=settings.pair_cache_ttl
        )
        self._listing_cache: TTLCache = TTLCache(
            maxsize=5000,
            ttl=settings.listing_cache_ttl
        )

    async def _request(
        self,
        endpoint: str,
        params: Optional[dict] = None
    ) -> Union[Dict[str, Any], List[Any], None]:
        """
        GET an endpoint. None means the API has no such resource.

        Raises:
            RateLimitError: HTTP 429
            SourceError: Other HTTP or transport failures
        """
        async with httpx.AsyncClient(timeout=settings.http_timeout, transport=self._transport) as client:
            url = f"{self.base_url}{endpoint}"
            try:
                response = await client.get(url, params=params)
            except httpx.RequestError as e:
                raise SourceError(f"GET {endpoint}: request error: {e}", source="meteora") from e

            if response.status_code == 404:
                return None
            if response.status_code == 429:
                raise RateLimitError(f"GET {endpoint}: HTTP 429", source="meteora")
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise SourceError(f"GET {endpoint}: HTTP error {e.response.status_code}", source="meteora") from e

            try:
                return response.json()
            except ValueError as e:
                raise MalformedPayloadError(f"GET {endpoint}: response is not JSON", source="meteora") from e

    async def _get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        token: Optional[CancelToken] = None,
    ) -> Union[Dict[str, Any], List[Any], None]:
        return await self.fetcher.fetch(
            lambda: self._request(endpoint, params),
            description=f"GET {endpoint}",
            token=token,
        )

    async def get_position(
        self,
        position_id: str,
        token: Optional[CancelToken] = None,
    ) -> Optional[dict]:
        """
        Position metadata: pair_address, owner, fee_apr_24h,
        total_fee_usd_claimed. None if unknown to the API.
        """
        result = await self._get(f"/position/{position_id}", token=token)
        if result is None:
            return None
        if not isinstance(result, dict):
            raise MalformedPayloadError(f"Position {position_id}: expected an object", source="meteora")
        return result

    async def get_pair(
        self,
        pair_address: str,
        token: Optional[CancelToken] = None,
    ) -> Optional[dict]:
        """
        Pair metadata: mint_x, mint_y, decimals, name, current_price.
        Results are cached for pair_cache_ttl seconds.
        """
        cache_key = f"pair_{pair_address}"

        if cache_key in self._pair_cache:
            return self._pair_cache[cache_key]

        result = await self._get(f"/pair/{pair_address}", token=token)
        if result is None:
            return None
        if not isinstance(result, dict):
            raise MalformedPayloadError(f"Pair {pair_address}: expected an object", source="meteora")

        self._pair_cache[cache_key] = result
        return result

    async def get_user_positions(
        self,
        pair_address: str,
        owner: str,
        token: Optional[CancelToken] = None,
    ) -> List[dict]:
        """
        Owner's positions within one pair.
        Results are cached for listing_cache_ttl seconds.
        """
        cache_key = f"user_{pair_address}_{owner}"

        if cache_key in self._listing_cache:
            return self._listing_cache[cache_key]

        result = await self._get(f"/pair/{pair_address}/user/{owner}", token=token)
        if result is None:
            positions: List[dict] = []
        elif isinstance(result, dict):
            positions = result.get("user_positions") or []
        elif isinstance(result, list):
            positions = result
        else:
            raise MalformedPayloadError(f"User positions {pair_address}: unexpected shape", source="meteora")

        self._listing_cache[cache_key] = positions
        return positions

    async def get_top_pairs(
        self,
        limit: int = 20,
        token: Optional[CancelToken] = None,
    ) -> List[dict]:
        """Highest-TVL pairs, used to widen the pool scan."""
        cache_key = f"top_{limit}"

        if cache_key in self._pair_cache:
            return self._pair_cache[cache_key]

        result = await self._get(
            "/pair/all_with_pagination",
            params={"limit": limit, "sort_key": "tvl", "order_by": "desc"},
            token=token,
        )
        if isinstance(result, dict):
            pairs = result.get("pairs") or result.get("data") or []
        elif isinstance(result, list):
            pairs = result
        else:
            pairs = []

        self._pair_cache[cache_key] = pairs
        return pairs


# Global client instance
meteora_client = MeteoraAPIClient()
