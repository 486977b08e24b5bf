"""
Solana JSON-RPC client.
Read-only access to transaction history and account state.
"""
from __future__ import annotations
import base64
import itertools
import logging
from typing import Optional, Dict, List, Any, Tuple

import httpx
from cachetools import TTLCache

from dlmm_tracker.core.config import settings
from dlmm_tracker.core.exceptions import (
    MalformedPayloadError,
    RateLimitError,
    SourceError,
)
from dlmm_tracker.models.schemas import TransactionRecord
from dlmm_tracker.services.fetcher import CancelToken, RateLimitedFetcher, run_bounded

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

RATE_LIMIT_CODES = {429, -32429}


def is_rate_limit_error(error: Dict[str, Any]) -> bool:
    """JSON-RPC error object signals throttling."""
    message = str(error.get("message", ""))
    return "too many requests" in message.lower() or error.get("code") in RATE_LIMIT_CODES


class SolanaRPCClient:
    """
    Async JSON-RPC client.
    Every call goes through RateLimitedFetcher.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url or settings.solana_rpc_url
        self.fetcher = fetcher or RateLimitedFetcher()
        self._transport = transport
        self._ids = itertools.count(1)

        # Mint decimals never change
        self._decimals_cache: TTLCache = TTLCache(maxsize=1000, ttl=3600)

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        """
        Single JSON-RPC call.

        Raises:
            RateLimitError: HTTP 429 or a throttling error object
            SourceError: Any other transport or RPC error
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        async with httpx.AsyncClient(timeout=settings.http_timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.rpc_url, json=payload)
            except httpx.RequestError as e:
                raise SourceError(f"{method}: request error: {e}", source="rpc") from e

            if response.status_code == 429:
                raise RateLimitError(f"{method}: HTTP 429", source="rpc")
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise SourceError(f"{method}: HTTP error {e.response.status_code}", source="rpc") from e

            try:
                data = response.json()
            except ValueError as e:
                raise MalformedPayloadError(f"{method}: response is not JSON", source="rpc") from e

        if not isinstance(data, dict):
            raise MalformedPayloadError(f"{method}: unexpected response shape", source="rpc")

        error = data.get("error")
        if error:
            if isinstance(error, dict) and is_rate_limit_error(error):
                raise RateLimitError(f"{method}: {error.get('message', 'rate limited')}", source="rpc")
            message = error.get("message") if isinstance(error, dict) else error
            raise SourceError(f"{method}: RPC error: {message}", source="rpc")

        return data.get("result")

    async def _call(self, method: str, params: List[Any], token: Optional[CancelToken] = None) -> Any:
        return await self.fetcher.fetch(
            lambda: self._rpc(method, params),
            description=method,
            token=token,
        )

    # =========================================================================
    # History
    # =========================================================================

    async def get_signatures_for_address(
        self,
        address: str,
        limit: int = 100,
        token: Optional[CancelToken] = None,
    ) -> List[str]:
        """Most recent signatures first."""
        result = await self._call("getSignaturesForAddress", [address, {"limit": limit}], token)
        if not isinstance(result, list):
            raise MalformedPayloadError("getSignaturesForAddress: result is not a list", source="rpc")
        return [entry["signature"] for entry in result if isinstance(entry, dict) and entry.get("signature")]

    async def get_transaction(
        self,
        signature: str,
        token: Optional[CancelToken] = None,
    ) -> Optional[TransactionRecord]:
        """Parsed transaction, or None if the node does not have it."""
        result = await self._call(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
            token,
        )
        if result is None:
            return None
        return TransactionRecord.from_rpc(signature, result)

    async def get_transactions(
        self,
        signatures: List[str],
        token: Optional[CancelToken] = None,
    ) -> Tuple[List[TransactionRecord], List[str]]:
        """
        Fetch many transactions through a bounded worker pool.
        Returns (records in input order, per-signature error strings).
        """
        outcomes = await run_bounded(
            signatures,
            lambda sig: self.get_transaction(sig, token),
            token=token,
        )
        records: List[TransactionRecord] = []
        errors: List[str] = []
        for outcome in outcomes:
            if not outcome.ok:
                errors.append(f"{outcome.item}: {outcome.error}")
            elif outcome.value is not None:
                records.append(outcome.value)
        return records, errors

    # =========================================================================
    # Account state
    # =========================================================================

    async def get_token_accounts_by_owner(
        self,
        owner: str,
        token: Optional[CancelToken] = None,
    ) -> List[Dict[str, Any]]:
        """SPL token accounts owned by an address: [{address, mint, amount, decimals}]."""
        result = await self._call(
            "getTokenAccountsByOwner",
            [owner, {"programId": TOKEN_PROGRAM_ID}, {"encoding": "jsonParsed"}],
            token,
        )
        accounts = []
        for entry in (result or {}).get("value") or []:
            try:
                info = entry["account"]["data"]["parsed"]["info"]
                amount = info["tokenAmount"]
                accounts.append({
                    "address": entry.get("pubkey", ""),
                    "mint": info["mint"],
                    "amount": float(amount.get("uiAmountString") or amount.get("uiAmount") or 0),
                    "decimals": int(amount.get("decimals") or 0),
                })
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unparseable token account for %s: %s", owner, e)
        return accounts

    async def get_account_data(
        self,
        address: str,
        token: Optional[CancelToken] = None,
    ) -> Optional[bytes]:
        """Raw account bytes, or None if the account does not exist."""
        result = await self._call("getAccountInfo", [address, {"encoding": "base64"}], token)
        value = (result or {}).get("value")
        if not value:
            return None
        return _decode_base64_data(value.get("data"), address)

    async def get_program_accounts(
        self,
        program_id: str,
        filters: Optional[List[Dict[str, Any]]] = None,
        token: Optional[CancelToken] = None,
    ) -> List[Tuple[str, bytes]]:
        """(pubkey, data) for every program account matching the filters."""
        config: Dict[str, Any] = {"encoding": "base64"}
        if filters:
            config["filters"] = filters
        result = await self._call("getProgramAccounts", [program_id, config], token)
        if not isinstance(result, list):
            raise MalformedPayloadError("getProgramAccounts: result is not a list", source="rpc")
        accounts = []
        for entry in result:
            pubkey = entry.get("pubkey", "")
            accounts.append((pubkey, _decode_base64_data(entry.get("account", {}).get("data"), pubkey)))
        return accounts

    async def get_mint_decimals(
        self,
        mint: str,
        token: Optional[CancelToken] = None,
    ) -> int:
        if mint in self._decimals_cache:
            return self._decimals_cache[mint]
        result = await self._call("getTokenSupply", [mint], token)
        try:
            decimals = int(result["value"]["decimals"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedPayloadError(f"getTokenSupply {mint}: {e}", source="rpc") from e
        self._decimals_cache[mint] = decimals
        return decimals


def _decode_base64_data(data: Any, address: str) -> bytes:
    # RPC returns ["<base64>", "base64"]
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, str):
        raise MalformedPayloadError(f"Account {address}: data is not base64", source="rpc")
    return base64.b64decode(data)


# Global client instance
solana_client = SolanaRPCClient()
