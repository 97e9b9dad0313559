"""Key layout and value encoding for token chain state.

Metadata
    0x0/ (tx)        [txID] => timestamp|success|units

State
    0x0/ (balance)   [owner|asset] => balance
    0x1/ (assets)    [asset] => metadataLen|metadata|supply|owner|warp
    0x2/ (orders)    [txID] => in|inTick|out|outTick|remaining|owner
    0x3/ (loans)     [asset|destination] => amount
    0x4/ (height)
    0x5/ (incoming warp)
    0x6/ (outgoing warp)
"""

from __future__ import annotations

import struct
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Optional, Protocol

ID_LEN = 32
PUBLIC_KEY_LEN = 32
UINT64_LEN = 8
UINT16_LEN = 2
MAX_UINT64 = (1 << 64) - 1
MAX_UINT16 = (1 << 16) - 1

EMPTY_ID = bytes(ID_LEN)
EMPTY_PUBLIC_KEY = bytes(PUBLIC_KEY_LEN)

TX_PREFIX = 0x0

BALANCE_PREFIX = 0x0
ASSET_PREFIX = 0x1
ORDER_PREFIX = 0x2
LOAN_PREFIX = 0x3
HEIGHT_PREFIX = 0x4
INCOMING_WARP_PREFIX = 0x5
OUTGOING_WARP_PREFIX = 0x6

FAILURE_BYTE = 0x0
SUCCESS_BYTE = 0x1

_HEIGHT_KEY = bytes([HEIGHT_PREFIX])

_UINT64 = struct.Struct(">Q")
_INT64 = struct.Struct(">q")
_UINT16 = struct.Struct(">H")

ReadState = Callable[[Sequence[bytes]], Sequence[Optional[bytes]]]


class InvalidBalanceError(ValueError):
    """Raised when a balance or loan would overflow or go below zero."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"invalid balance: {detail}")
        self.detail = detail


class Database(Protocol):
    def get_value(self, key: bytes) -> bytes: ...

    def insert(self, key: bytes, value: bytes) -> None: ...

    def remove(self, key: bytes) -> None: ...


class MemoryDatabase:
    """A dictionary-backed key/value store; missing keys raise KeyError."""

    def __init__(self, items: Iterable[tuple[bytes, bytes]] = ()) -> None:
        self._data: dict[bytes, bytes] = {bytes(k): bytes(v) for k, v in items}

    def get_value(self, key: bytes) -> bytes:
        return self._data[bytes(key)]

    def insert(self, key: bytes, value: bytes) -> None:
        self._data[bytes(key)] = bytes(value)

    def remove(self, key: bytes) -> None:
        self._data.pop(bytes(key), None)

    def read_state(self, keys: Sequence[bytes]) -> list[Optional[bytes]]:
        """Return the value for each key, or None where it is absent."""
        return [self._data.get(bytes(k)) for k in keys]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._data)


@dataclass(frozen=True)
class TransactionRecord:
    timestamp: int
    success: bool
    units: int


@dataclass(frozen=True)
class AssetRecord:
    metadata: bytes
    supply: int
    owner: bytes
    warp: bool


@dataclass(frozen=True)
class OrderRecord:
    in_asset: bytes
    in_tick: int
    out_asset: bytes
    out_tick: int
    remaining: int
    owner: bytes


def _check_len(value: bytes, length: int, what: str) -> bytes:
    value = bytes(value)
    if len(value) != length:
        raise ValueError(f"{what} must be {length} bytes, got {len(value)}")
    return value


def _id(value: bytes, what: str = "id") -> bytes:
    return _check_len(value, ID_LEN, what)


def _pk(value: bytes) -> bytes:
    return _check_len(value, PUBLIC_KEY_LEN, "public key")


def _u64(value: int, what: str) -> bytes:
    if not 0 <= value <= MAX_UINT64:
        raise ValueError(f"{what} out of uint64 range: {value}")
    return _UINT64.pack(value)


def _get(db: Database, key: bytes) -> Optional[bytes]:
    try:
        return db.get_value(key)
    except KeyError:
        return None


def _read_one(read_state: ReadState, key: bytes) -> Optional[bytes]:
    return read_state([key])[0]


def _decode_u64(value: Optional[bytes]) -> int:
    if value is None:
        return 0
    return _UINT64.unpack_from(value)[0]


# Transactions


def prefix_tx_key(tx_id: bytes) -> bytes:
    """[txPrefix] + [txID]"""
    return bytes([TX_PREFIX]) + _id(tx_id, "tx id")


def store_transaction(
    db: Database, tx_id: bytes, timestamp: int, success: bool, units: int
) -> None:
    value = (
        _INT64.pack(timestamp)
        + bytes([SUCCESS_BYTE if success else FAILURE_BYTE])
        + _u64(units, "units")
    )
    db.insert(prefix_tx_key(tx_id), value)


def get_transaction(db: Database, tx_id: bytes) -> Optional[TransactionRecord]:
    """Return the stored transaction result, or None if it is unknown."""
    value = _get(db, prefix_tx_key(tx_id))
    if value is None:
        return None
    timestamp = _INT64.unpack_from(value)[0]
    success = value[UINT64_LEN] != FAILURE_BYTE
    units = _UINT64.unpack_from(value, UINT64_LEN + 1)[0]
    return TransactionRecord(timestamp, success, units)


# Balances


def prefix_balance_key(public_key: bytes, asset: bytes) -> bytes:
    """[balancePrefix] + [address] + [asset]"""
    return bytes([BALANCE_PREFIX]) + _pk(public_key) + _id(asset, "asset")


def get_balance(db: Database, public_key: bytes, asset: bytes) -> int:
    """Return the balance, which is 0 when no record exists."""
    return _decode_u64(_get(db, prefix_balance_key(public_key, asset)))


def get_balance_from_state(read_state: ReadState, public_key: bytes, asset: bytes) -> int:
    return _decode_u64(_read_one(read_state, prefix_balance_key(public_key, asset)))


def set_balance(db: Database, public_key: bytes, asset: bytes, balance: int) -> None:
    db.insert(prefix_balance_key(public_key, asset), _u64(balance, "balance"))


def delete_balance(db: Database, public_key: bytes, asset: bytes) -> None:
    db.remove(prefix_balance_key(public_key, asset))


def add_balance(db: Database, public_key: bytes, asset: bytes, amount: int) -> None:
    key = prefix_balance_key(public_key, asset)
    balance = _decode_u64(_get(db, key))
    new_balance = balance + amount
    if amount < 0 or new_balance > MAX_UINT64:
        raise InvalidBalanceError(
            f"could not add balance (asset={asset.hex()}, bal={balance}, "
            f"addr={public_key.hex()}, amount={amount})"
        )
    db.insert(key, _UINT64.pack(new_balance))


def sub_balance(db: Database, public_key: bytes, asset: bytes, amount: int) -> None:
    key = prefix_balance_key(public_key, asset)
    balance = _decode_u64(_get(db, key))
    if amount < 0 or amount > balance:
        raise InvalidBalanceError(
            f"could not subtract balance (asset={asset.hex()}, bal={balance}, "
            f"addr={public_key.hex()}, amount={amount})"
        )
    new_balance = balance - amount
    if new_balance == 0:
        # An empty balance is removed rather than stored as zero.
        db.remove(key)
        return
    db.insert(key, _UINT64.pack(new_balance))


# Assets


def prefix_asset_key(asset: bytes) -> bytes:
    """[assetPrefix] + [asset]"""
    return bytes([ASSET_PREFIX]) + _id(asset, "asset")


def _decode_asset(value: Optional[bytes]) -> Optional[AssetRecord]:
    if value is None:
        return None
    metadata_len = _UINT16.unpack_from(value)[0]
    offset = UINT16_LEN
    metadata = value[offset : offset + metadata_len]
    offset += metadata_len
    supply = _UINT64.unpack_from(value, offset)[0]
    offset += UINT64_LEN
    owner = value[offset : offset + PUBLIC_KEY_LEN]
    offset += PUBLIC_KEY_LEN
    warp = value[offset] == 0x1
    return AssetRecord(bytes(metadata), supply, bytes(owner), warp)


def get_asset(db: Database, asset: bytes) -> Optional[AssetRecord]:
    """Return the asset record, or None if the asset does not exist."""
    return _decode_asset(_get(db, prefix_asset_key(asset)))


def get_asset_from_state(read_state: ReadState, asset: bytes) -> Optional[AssetRecord]:
    return _decode_asset(_read_one(read_state, prefix_asset_key(asset)))


def set_asset(
    db: Database,
    asset: bytes,
    metadata: bytes,
    supply: int,
    owner: bytes,
    warp: bool,
) -> None:
    metadata = bytes(metadata)
    if len(metadata) > MAX_UINT16:
        raise ValueError(f"metadata too long: {len(metadata)} bytes")
    value = (
        _UINT16.pack(len(metadata))
        + metadata
        + _u64(supply, "supply")
        + _pk(owner)
        + bytes([0x1 if warp else 0x0])
    )
    db.insert(prefix_asset_key(asset), value)


def delete_asset(db: Database, asset: bytes) -> None:
    db.remove(prefix_asset_key(asset))


# Orders


def prefix_order_key(tx_id: bytes) -> bytes:
    """[orderPrefix] + [txID]"""
    return bytes([ORDER_PREFIX]) + _id(tx_id, "tx id")


def set_order(
    db: Database,
    tx_id: bytes,
    in_asset: bytes,
    in_tick: int,
    out_asset: bytes,
    out_tick: int,
    supply: int,
    owner: bytes,
) -> None:
    value = (
        _id(in_asset, "in asset")
        + _u64(in_tick, "in tick")
        + _id(out_asset, "out asset")
        + _u64(out_tick, "out tick")
        + _u64(supply, "supply")
        + _pk(owner)
    )
    db.insert(prefix_order_key(tx_id), value)


def get_order(db: Database, order: bytes) -> Optional[OrderRecord]:
    """Return the order record, or None if the order does not exist."""
    value = _get(db, prefix_order_key(order))
    if value is None:
        return None
    offset = 0
    in_asset = value[offset : offset + ID_LEN]
    offset += ID_LEN
    in_tick = _UINT64.unpack_from(value, offset)[0]
    offset += UINT64_LEN
    out_asset = value[offset : offset + ID_LEN]
    offset += ID_LEN
    out_tick = _UINT64.unpack_from(value, offset)[0]
    offset += UINT64_LEN
    remaining = _UINT64.unpack_from(value, offset)[0]
    offset += UINT64_LEN
    owner = value[offset : offset + PUBLIC_KEY_LEN]
    return OrderRecord(
        bytes(in_asset), in_tick, bytes(out_asset), out_tick, remaining, bytes(owner)
    )


def delete_order(db: Database, order: bytes) -> None:
    db.remove(prefix_order_key(order))


# Loans


def prefix_loan_key(asset: bytes, destination: bytes) -> bytes:
    """[loanPrefix] + [asset] + [destination]"""
    return bytes([LOAN_PREFIX]) + _id(asset, "asset") + _id(destination, "destination")


def get_loan(db: Database, asset: bytes, destination: bytes) -> int:
    return _decode_u64(_get(db, prefix_loan_key(asset, destination)))


def get_loan_from_state(read_state: ReadState, asset: bytes, destination: bytes) -> int:
    return _decode_u64(_read_one(read_state, prefix_loan_key(asset, destination)))


def set_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    db.insert(prefix_loan_key(asset, destination), _u64(amount, "loan"))


def add_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    loan = get_loan(db, asset, destination)
    new_loan = loan + amount
    if amount < 0 or new_loan > MAX_UINT64:
        raise InvalidBalanceError(
            f"could not add loan (asset={asset.hex()}, "
            f"destination={destination.hex()}, amount={amount})"
        )
    set_loan(db, asset, destination, new_loan)


def sub_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    loan = get_loan(db, asset, destination)
    if amount < 0 or amount > loan:
        raise InvalidBalanceError(
            f"could not subtract loan (asset={asset.hex()}, "
            f"destination={destination.hex()}, amount={amount})"
        )
    new_loan = loan - amount
    if new_loan == 0:
        # An empty loan is removed rather than stored as zero.
        db.remove(prefix_loan_key(asset, destination))
        return
    set_loan(db, asset, destination, new_loan)


# Chain bookkeeping keys


def height_key() -> bytes:
    return _HEIGHT_KEY


def incoming_warp_key_prefix(source_chain_id: bytes, msg_id: bytes) -> bytes:
    return (
        bytes([INCOMING_WARP_PREFIX])
        + _id(source_chain_id, "source chain id")
        + _id(msg_id, "message id")
    )


def outgoing_warp_key_prefix(tx_id: bytes) -> bytes:
    return bytes([OUTGOING_WARP_PREFIX]) + _id(tx_id, "tx id")