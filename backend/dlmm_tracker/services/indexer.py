"""
Indexed program accounts client (Shyft GraphQL).
Looks up DLMM position accounts by owner without scanning the chain.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Any, Dict

import httpx

from dlmm_tracker.core.config import settings
from dlmm_tracker.core.exceptions import MalformedPayloadError, RateLimitError, SourceError
from dlmm_tracker.services.dlmm_math import PositionAccount
from dlmm_tracker.services.fetcher import CancelToken, RateLimitedFetcher

logger = logging.getLogger(__name__)

POSITIONS_BY_OWNER_QUERY = """
query PositionsByOwner($owner: String) {
  meteora_dlmm_PositionV2(where: {owner: {_eq: $owner}}) {
    pubkey
    lbPair
    owner
    lowerBinId
    upperBinId
    liquidityShares
  }
}
"""


@dataclass
class IndexedPosition:
    """Raw position record as stored by the indexer."""
    position_id: str
    pool_id: str
    owner: str
    lower_bin_id: int
    upper_bin_id: int
    liquidity_shares: List[int] = field(default_factory=list)

    def to_account(self) -> PositionAccount:
        return PositionAccount(
            lb_pair=self.pool_id,
            owner=self.owner,
            lower_bin_id=self.lower_bin_id,
            upper_bin_id=self.upper_bin_id,
            liquidity_shares=list(self.liquidity_shares),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "IndexedPosition":
        return cls(
            position_id=str(row["pubkey"]),
            pool_id=str(row["lbPair"]),
            owner=str(row.get("owner") or ""),
            lower_bin_id=int(row["lowerBinId"]),
            upper_bin_id=int(row["upperBinId"]),
            liquidity_shares=[int(s) for s in row.get("liquidityShares") or []],
        )


class IndexedAccountsClient:
    """GraphQL client. Without an API key it reports no data."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.indexer_graphql_url
        self.api_key = settings.indexer_api_key if api_key is None else api_key
        self.fetcher = fetcher or RateLimitedFetcher()
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        params = {"api_key": self.api_key, "network": "mainnet-beta"}
        async with httpx.AsyncClient(timeout=settings.http_timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    self.url,
                    params=params,
                    json={"query": query, "variables": variables},
                )
            except httpx.RequestError as e:
                raise SourceError(f"Indexer request error: {e}", source="indexer") from e

            if response.status_code == 429:
                raise RateLimitError("Indexer: HTTP 429", source="indexer")
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise SourceError(f"Indexer HTTP error {e.response.status_code}", source="indexer") from e

            try:
                body = response.json()
            except ValueError as e:
                raise MalformedPayloadError("Indexer response is not JSON", source="indexer") from e

        if not isinstance(body, dict):
            raise MalformedPayloadError("Indexer response is not an object", source="indexer")
        if body.get("errors"):
            raise SourceError(f"Indexer query failed: {body['errors']}", source="indexer")
        return body.get("data") or {}

    async def get_positions_by_owner(
        self,
        owner: str,
        token: Optional[CancelToken] = None,
    ) -> List[IndexedPosition]:
        if not self.enabled:
            return []

        data = await self.fetcher.fetch(
            lambda: self._query(POSITIONS_BY_OWNER_QUERY, {"owner": owner}),
            description="indexer positions",
            token=token,
        )
        rows = data.get("meteora_dlmm_PositionV2") or []

        positions = []
        for row in rows:
            try:
                positions.append(IndexedPosition.from_row(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed indexed position for %s: %s", owner, e)
        return positions


indexer_client = IndexedAccountsClient()
