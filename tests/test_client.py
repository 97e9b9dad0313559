import json
import threading
from wsgiref.simple_server import WSGIRequestHandler, make_server

import pytest

from tokenstate import storage
from tokenstate.client import JSONRPCClient, RPCError
from tokenstate.server import SERVER_ERROR, JSONRPCServer

ALICE = bytes(range(32))
ASSET = bytes([7]) * 32
DEST = bytes([9]) * 32
TX = bytes([3]) * 32
CHAIN = bytes([1]) * 32


class FakeController:
    def __init__(self):
        self.db = storage.MemoryDatabase()
        self.orders_by_pair = {}

    def genesis(self):
        return {"minUnitPrice": 1}

    def get_transaction(self, tx_id):
        return storage.get_transaction(self.db, tx_id)

    def get_asset_from_state(self, asset):
        return storage.get_asset_from_state(self.db.read_state, asset)

    def get_balance_from_state(self, public_key, asset):
        return storage.get_balance_from_state(self.db.read_state, public_key, asset)

    def orders(self, pair, limit):
        return self.orders_by_pair.get(pair, [])[:limit]

    def get_loan_from_state(self, asset, destination):
        return storage.get_loan_from_state(self.db.read_state, asset, destination)


class Bridge:
    def __init__(self, server, before=None):
        self.server = server
        self.calls = []
        self.before = before

    def __call__(self, url, body):
        self.calls.append((url, json.loads(body)))
        if self.before is not None:
            self.before(len(self.calls))
        return json.dumps(self.server.handle(body)).encode()


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def bridge(controller):
    return Bridge(JSONRPCServer(controller))


@pytest.fixture
def client(bridge):
    return JSONRPCClient("http://localhost:9650/ext/bc/chain/", CHAIN, transport=bridge)


def test_endpoint_and_method_name(client, bridge):
    assert client.chain_id == CHAIN
    client.genesis()
    url, request = bridge.calls[0]
    assert url == "http://localhost:9650/ext/bc/chain/tokenapi"
    assert request["method"] == "tokenvm.genesis"


def test_genesis_is_cached(client, bridge):
    assert client.genesis() == {"minUnitPrice": 1}
    assert client.genesis() == {"minUnitPrice": 1}
    assert len(bridge.calls) == 1


def test_tx_found_and_missing(controller, client):
    assert client.tx(TX) is None
    storage.store_transaction(controller.db, TX, 1234, False, 472)
    assert client.tx(TX) == storage.TransactionRecord(1234, False, 472)


def test_asset_round_trip(controller, client):
    assert client.asset(ASSET) is None
    storage.set_asset(controller.db, ASSET, b"blah", 10, ALICE, True)
    record = client.asset(ASSET)
    assert record.metadata == b"blah"
    assert record.supply == 10
    assert record.owner == ALICE.hex()
    assert record.warp is True


def test_asset_without_metadata(controller, client):
    storage.set_asset(controller.db, ASSET, b"", 0, ALICE, False)
    assert client.asset(ASSET).metadata == b""


def test_balance_loan_orders(controller, client):
    storage.set_balance(controller.db, ALICE, ASSET, 100)
    storage.set_loan(controller.db, ASSET, DEST, 110)
    controller.orders_by_pair["x-y"] = [{"id": "o1", "remaining": 4}]
    assert client.balance(ALICE.hex(), ASSET) == 100
    assert client.loan(ASSET, DEST) == 110
    assert client.orders("x-y") == [{"id": "o1", "remaining": 4}]
    assert client.orders("none") == []


def test_server_error_is_raised(client):
    with pytest.raises(RPCError) as info:
        client.balance("zz", ASSET)
    assert info.value.code == SERVER_ERROR


def test_malformed_response():
    client = JSONRPCClient("http://localhost", CHAIN, transport=lambda url, body: b"<html>")
    with pytest.raises(RPCError):
        client.balance(ALICE.hex(), ASSET)


def test_bad_id_length_rejected(client):
    with pytest.raises(ValueError):
        client.loan(b"short", DEST)


def test_wait_for_transaction(controller):
    def store_later(count):
        if count == 2:
            storage.store_transaction(controller.db, TX, 5, True, 1)

    bridge = Bridge(JSONRPCServer(controller), before=store_later)
    client = JSONRPCClient("http://localhost", CHAIN, transport=bridge, poll_interval=0)
    assert client.wait_for_transaction(TX) is True
    assert len(bridge.calls) == 2


def test_wait_for_balance(controller):
    def fund_later(count):
        if count == 3:
            storage.set_balance(controller.db, ALICE, ASSET, 50)

    bridge = Bridge(JSONRPCServer(controller), before=fund_later)
    client = JSONRPCClient("http://localhost", CHAIN, transport=bridge, poll_interval=0)
    client.wait_for_balance(ALICE.hex(), ASSET, 50)
    assert len(bridge.calls) == 3


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        pass


def test_http_round_trip(controller):
    storage.set_balance(controller.db, ALICE, ASSET, 77)
    httpd = make_server("127.0.0.1", 0, JSONRPCServer(controller), handler_class=_QuietHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        port = httpd.server_address[1]
        client = JSONRPCClient(f"http://127.0.0.1:{port}/", CHAIN, timeout=5)
        assert client.balance(ALICE.hex(), ASSET) == 77
        assert client.tx(TX) is None
    finally:
        httpd.shutdown()
        httpd.server_close()
        thread.join(timeout=5)