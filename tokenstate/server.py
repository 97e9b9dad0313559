"""JSON-RPC service that answers queries about token chain state."""

from __future__ import annotations

import base64
import json
from collections.abc import Callable, Sequence
from typing import Any, Optional, Protocol

from .storage import (
    EMPTY_ID,
    ID_LEN,
    PUBLIC_KEY_LEN,
    AssetRecord,
    TransactionRecord,
)

JSONRPC_ENDPOINT = "/tokenapi"
NAMESPACE = "tokenvm"
ORDERS_TO_SEND = 128

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000


class TxNotFoundError(LookupError):
    """Raised when a transaction is not known."""

    def __init__(self) -> None:
        super().__init__("tx not found")


class AssetNotFoundError(LookupError):
    """Raised when an asset does not exist."""

    def __init__(self) -> None:
        super().__init__("asset not found")


class Controller(Protocol):
    """What the server needs from the running chain."""

    def genesis(self) -> Any: ...

    def get_transaction(self, tx_id: bytes) -> Optional[TransactionRecord]: ...

    def get_asset_from_state(self, asset: bytes) -> Optional[AssetRecord]: ...

    def get_balance_from_state(self, public_key: bytes, asset: bytes) -> int: ...

    def orders(self, pair: str, limit: int) -> Sequence[Any]: ...

    def get_loan_from_state(self, asset: bytes, destination: bytes) -> int: ...


class _InvalidParams(ValueError):
    pass


def _hex_address(public_key: bytes) -> str:
    return bytes(public_key).hex()


def _parse_hex_address(address: str) -> bytes:
    try:
        public_key = bytes.fromhex(address)
    except ValueError:
        raise ValueError(f"invalid address: {address!r}") from None
    if len(public_key) != PUBLIC_KEY_LEN:
        raise ValueError(f"invalid address length: {len(public_key)} bytes")
    return public_key


def _params(raw: Any) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, list):
        if not raw:
            return {}
        if len(raw) == 1 and isinstance(raw[0], dict):
            return raw[0]
        raise _InvalidParams("params must hold a single object")
    if isinstance(raw, dict):
        return raw
    raise _InvalidParams("params must be an object")


def _decode_id(params: dict, name: str) -> bytes:
    value = params.get(name)
    if value is None:
        return EMPTY_ID
    if not isinstance(value, str):
        raise _InvalidParams(f"{name} must be a string")
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise _InvalidParams(f"{name} is not hex") from None
    if len(raw) != ID_LEN:
        raise _InvalidParams(f"{name} must be {ID_LEN} bytes")
    return raw


def _decode_str(params: dict, name: str) -> str:
    value = params.get(name, "")
    if not isinstance(value, str):
        raise _InvalidParams(f"{name} must be a string")
    return value


def _error(request_id: Any, code: int, message: str) -> dict:
    return {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": request_id,
    }


class JSONRPCServer:
    """Serves token state queries; usable directly or as a WSGI application."""

    def __init__(
        self,
        controller: Controller,
        *,
        namespace: str = NAMESPACE,
        encode_address: Callable[[bytes], str] = _hex_address,
        decode_address: Callable[[str], bytes] = _parse_hex_address,
    ) -> None:
        self._controller = controller
        self._namespace = namespace
        self._encode_address = encode_address
        self._decode_address = decode_address
        self._handlers: dict[str, Callable[[dict], dict]] = {
            "genesis": lambda p: self.genesis(),
            "tx": lambda p: self.tx(_decode_id(p, "txId")),
            "asset": lambda p: self.asset(_decode_id(p, "asset")),
            "balance": lambda p: self.balance(
                _decode_str(p, "address"), _decode_id(p, "asset")
            ),
            "orders": lambda p: self.orders(_decode_str(p, "pair")),
            "loan": lambda p: self.loan(
                _decode_id(p, "asset"), _decode_id(p, "destination")
            ),
        }

    def genesis(self) -> dict:
        return {"genesis": self._controller.genesis()}

    def tx(self, tx_id: bytes) -> dict:
        record = self._controller.get_transaction(tx_id)
        if record is None:
            raise TxNotFoundError()
        return {
            "timestamp": record.timestamp,
            "success": record.success,
            "units": record.units,
        }

    def asset(self, asset: bytes) -> dict:
        record = self._controller.get_asset_from_state(asset)
        if record is None:
            raise AssetNotFoundError()
        return {
            "metadata": base64.b64encode(record.metadata).decode("ascii"),
            "supply": record.supply,
            "owner": self._encode_address(record.owner),
            "warp": record.warp,
        }

    def balance(self, address: str, asset: bytes) -> dict:
        public_key = self._decode_address(address)
        return {"amount": self._controller.get_balance_from_state(public_key, asset)}

    def orders(self, pair: str) -> dict:
        return {"orders": list(self._controller.orders(pair, ORDERS_TO_SEND))}

    def loan(self, asset: bytes, destination: bytes) -> dict:
        return {"amount": self._controller.get_loan_from_state(asset, destination)}

    def handle(self, payload: Any) -> dict:
        """Answer one JSON-RPC request, given as JSON text or a decoded object."""
        if isinstance(payload, (bytes, bytearray, str)):
            try:
                request = json.loads(payload)
            except (ValueError, UnicodeDecodeError):
                return _error(None, PARSE_ERROR, "parse error")
        else:
            request = payload
        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            request_id = request.get("id") if isinstance(request, dict) else None
            return _error(request_id, INVALID_REQUEST, "invalid request")

        request_id = request.get("id")
        method = request["method"]
        prefix = self._namespace + "."
        handler = (
            self._handlers.get(method[len(prefix):])
            if method.startswith(prefix)
            else None
        )
        if handler is None:
            return _error(request_id, METHOD_NOT_FOUND, f"method not found: {method}")
        try:
            result = handler(_params(request.get("params")))
        except _InvalidParams as exc:
            return _error(request_id, INVALID_PARAMS, str(exc))
        except Exception as exc:  # every failure is reported to the caller
            return _error(request_id, SERVER_ERROR, str(exc))
        return {"jsonrpc": "2.0", "result": result, "id": request_id}

    def __call__(self, environ: dict, start_response: Callable) -> list[bytes]:
        if environ.get("REQUEST_METHOD") != "POST":
            start_response(
                "405 Method Not Allowed",
                [("Allow", "POST"), ("Content-Type", "text/plain")],
            )
            return [b"method not allowed"]
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = environ["wsgi.input"].read(length) if length > 0 else b""
        data = json.dumps(self.handle(body)).encode("utf-8")
        start_response(
            "200 OK",
            [("Content-Type", "application/json"), ("Content-Length", str(len(data)))],
        )
        return [data]