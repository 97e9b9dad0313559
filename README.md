# tokenstate

`tokenstate` stores the state of a simple token ledger in a key-value
database and serves queries about it over JSON-RPC. It has no dependencies
outside the standard library.

The package has three modules:

- `tokenstate.storage`: the binary key and value layout for transactions,
  balances, assets, orders, loans and warp messages. It works with any
  database object that offers `get_value`, `insert` and `remove`.
  `MemoryDatabase` is an in-memory one.
- `tokenstate.server`: `JSONRPCServer` answers the methods `genesis`, `tx`,
  `asset`, `balance`, `orders` and `loan`. It reads state through a
  `Controller` that you supply, and it can also run as a WSGI application.
- `tokenstate.client`: `JSONRPCClient` calls those methods and can wait for
  a balance or a transaction.

## Installation

```
pip install tokenstate
```

To run the tests:

```
pip install "tokenstate[test]"
pytest
```

## Storage

Identifiers (transaction ids, asset ids, chain ids) and public keys are
32-byte `bytes` values. Amounts are unsigned 64-bit integers.

```python
from tokenstate.storage import (
    MemoryDatabase, InvalidBalanceError,
    add_balance, sub_balance, get_balance,
    set_asset, get_asset,
)

db = MemoryDatabase()
owner = bytes(32)
asset = bytes(range(32))

add_balance(db, owner, asset, 100)
sub_balance(db, owner, asset, 40)
assert get_balance(db, owner, asset) == 60

try:
    sub_balance(db, owner, asset, 1000)
except InvalidBalanceError as exc:
    print(exc)  # "invalid balance: could not subtract balance (...)"

set_asset(db, asset, b"TKN", 60, owner, False)
record = get_asset(db, asset)  # AssetRecord(metadata, supply, owner, warp)
```

Each kind of record has a key function (`prefix_tx_key`, `prefix_balance_key`,
`prefix_asset_key`, `prefix_order_key`, `prefix_loan_key`), plus `height_key`,
`incoming_warp_key_prefix` and `outgoing_warp_key_prefix`. The read and write
functions are:

- transactions: `store_transaction`, `get_transaction` (a
  `TransactionRecord` or `None`)
- balances: `get_balance`, `set_balance`, `delete_balance`, `add_balance`,
  `sub_balance`
- assets: `get_asset`, `set_asset`, `delete_asset`
- orders: `set_order`, `get_order` (an `OrderRecord` or `None`),
  `delete_order`
- loans: `get_loan`, `set_loan`, `add_loan`, `sub_loan`

A missing balance or loan reads as 0. A balance or loan that falls to zero is
removed, not stored as zero. Adding past the 64-bit range, or subtracting more
than is there, raises `InvalidBalanceError`. The `*_from_state` variants
(`get_balance_from_state`, `get_asset_from_state`, `get_loan_from_state`)
take a callable that maps a list of keys to a list of values, with `None`
where a key is absent. `MemoryDatabase.read_state` is such a callable.
Identifiers and keys of the wrong length raise `ValueError`.

## Server

`JSONRPCServer(controller)` needs an object with the methods `genesis()`,
`get_transaction(tx_id)`, `get_asset_from_state(asset)`,
`get_balance_from_state(public_key, asset)`, `orders(pair, limit)` and
`get_loan_from_state(asset, destination)`.

Method names carry a namespace, by default `tokenvm`, as in
`tokenvm.balance`. Parameters go in a single object, or in a list holding one
object. Ids are sent as hex strings and asset metadata comes back in base64.
By default an address is the hex form of a public key. Pass `encode_address`
and `decode_address` to use another format. `orders` returns at most 128
orders.

`handle(payload)` answers one request, given either as JSON text or bytes or
as a decoded dict, and returns the response dict. An unknown transaction or
asset becomes an error response whose message is "tx not found" or "asset
not found". Calling the server with `(environ, start_response)` serves it as
a WSGI application that accepts only POST.

## Client

```python
import json
from tokenstate.client import JSONRPCClient
from tokenstate.server import JSONRPCServer
from tokenstate.storage import MemoryDatabase, get_balance_from_state, set_balance

db = MemoryDatabase()
owner = bytes(32)
asset = bytes(range(32))
set_balance(db, owner, asset, 5)


class Chain:
    def genesis(self):
        return {}

    def get_transaction(self, tx_id):
        return None

    def get_asset_from_state(self, asset):
        return None

    def get_balance_from_state(self, public_key, asset):
        return get_balance_from_state(db.read_state, public_key, asset)

    def orders(self, pair, limit):
        return []

    def get_loan_from_state(self, asset, destination):
        return 0


server = JSONRPCServer(Chain())
client = JSONRPCClient(
    "http://localhost:9650",
    bytes(32),
    transport=lambda url, body: json.dumps(server.handle(body)).encode(),
)
assert client.balance(owner.hex(), asset) == 5
assert client.tx(bytes(32)) is None
```

The client sends its requests to `uri + "/tokenapi"`. With no `transport` it
posts over HTTP with `urllib`. `tx` and `asset` return `None` for an unknown
transaction or asset. Any other error from the server, and any malformed
reply, raises `RPCError`. `genesis` is fetched once and then cached.
`wait_for_balance` and `wait_for_transaction` poll every `poll_interval`
seconds. If `wait_timeout` is set and the wait runs past it, they raise
`TimeoutError`. `wait_for_transaction` returns whether the transaction
succeeded.

## What this package does not do

It does not execute transactions, build blocks or run a chain. The server
only reports what the `Controller` you give it returns. There is no
command-line program, and no address format other than hex is built in.