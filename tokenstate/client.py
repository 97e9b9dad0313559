"""Client for the token state JSON-RPC service."""

from __future__ import annotations

import base64
import itertools
import json
import logging
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from typing import Any, Optional

from .server import JSONRPC_ENDPOINT, NAMESPACE
from .storage import ID_LEN, AssetRecord, TransactionRecord

logger = logging.getLogger(__name__)

Transport = Callable[[str, bytes], bytes]


class RPCError(Exception):
    """An error reported by the service or while talking to it."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


def _http_transport(timeout: float) -> Transport:
    def send(url: str, body: bytes) -> bytes:
        request = urllib.request.Request(
            url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                return response.read()
        except urllib.error.HTTPError as exc:
            raise RPCError(f"HTTP {exc.code}: {exc.reason}", exc.code) from exc

    return send


def _encode_id(value: bytes, what: str) -> str:
    value = bytes(value)
    if len(value) != ID_LEN:
        raise ValueError(f"{what} must be {ID_LEN} bytes, got {len(value)}")
    return value.hex()


class JSONRPCClient:
    """Queries balances, assets, orders, loans and transactions of one chain."""

    def __init__(
        self,
        uri: str,
        chain_id: bytes,
        *,
        namespace: str = NAMESPACE,
        transport: Optional[Transport] = None,
        timeout: float = 10.0,
        poll_interval: float = 0.5,
        wait_timeout: Optional[float] = None,
    ) -> None:
        self.endpoint = uri.removesuffix("/") + JSONRPC_ENDPOINT
        self.chain_id = bytes(chain_id)
        self._namespace = namespace
        self._transport = transport or _http_transport(timeout)
        self._poll_interval = poll_interval
        self.wait_timeout = wait_timeout
        self._ids = itertools.count(1)
        self._genesis: Any = None
        self._has_genesis = False

    def _request(self, method: str, params: Optional[dict] = None) -> dict:
        body = json.dumps(
            {
                "jsonrpc": "2.0",
                "method": f"{self._namespace}.{method}",
                "params": [params or {}],
                "id": next(self._ids),
            }
        ).encode("utf-8")
        raw = self._transport(self.endpoint, body)
        try:
            reply = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as exc:
            raise RPCError("malformed response") from exc
        if not isinstance(reply, dict):
            raise RPCError("malformed response")
        error = reply.get("error")
        if error:
            if isinstance(error, dict):
                raise RPCError(str(error.get("message", error)), error.get("code"))
            raise RPCError(str(error))
        result = reply.get("result")
        return result if isinstance(result, dict) else {}

    def genesis(self) -> Any:
        """Return the chain genesis, fetched once and then cached."""
        if not self._has_genesis:
            self._genesis = self._request("genesis").get("genesis")
            self._has_genesis = True
        return self._genesis

    def tx(self, tx_id: bytes) -> Optional[TransactionRecord]:
        """Return the transaction result, or None if it is not known yet."""
        try:
            result = self._request("tx", {"txId": _encode_id(tx_id, "tx id")})
        except RPCError as exc:
            if "tx not found" in str(exc):
                return None
            raise
        return TransactionRecord(
            int(result.get("timestamp", 0)),
            bool(result.get("success", False)),
            int(result.get("units", 0)),
        )

    def asset(self, asset: bytes) -> Optional[AssetRecord]:
        """Return the asset, with its owner as an address string, or None."""
        try:
            result = self._request("asset", {"asset": _encode_id(asset, "asset")})
        except RPCError as exc:
            if "asset not found" in str(exc):
                return None
            raise
        metadata = result.get("metadata")
        return AssetRecord(
            base64.b64decode(metadata) if metadata else b"",
            int(result.get("supply", 0)),
            result.get("owner", ""),
            bool(result.get("warp", False)),
        )

    def balance(self, address: str, asset: bytes) -> int:
        result = self._request(
            "balance", {"address": address, "asset": _encode_id(asset, "asset")}
        )
        return int(result.get("amount", 0))

    def orders(self, pair: str) -> list:
        return list(self._request("orders", {"pair": pair}).get("orders") or [])

    def loan(self, asset: bytes, destination: bytes) -> int:
        result = self._request(
            "loan",
            {
                "asset": _encode_id(asset, "asset"),
                "destination": _encode_id(destination, "destination"),
            },
        )
        return int(result.get("amount", 0))

    def _wait(self, check: Callable[[], bool]) -> None:
        timeout = self.wait_timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        while not check():
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("condition not met before timeout")
            time.sleep(self._poll_interval)

    def wait_for_balance(self, address: str, asset: bytes, minimum: int) -> None:
        """Block until the balance of address reaches minimum."""

        def reached() -> bool:
            if self.balance(address, asset) >= minimum:
                return True
            logger.info("waiting for %d balance: %s", minimum, address)
            return False

        self._wait(reached)

    def wait_for_transaction(self, tx_id: bytes) -> bool:
        """Block until the transaction is known and return whether it succeeded."""
        found: list[TransactionRecord] = []

        def known() -> bool:
            record = self.tx(tx_id)
            if record is None:
                return False
            found.append(record)
            return True

        self._wait(known)
        return found[-1].success