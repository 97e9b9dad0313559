"""Token ledger state storage, with a JSON-RPC server and client for querying it."""

__version__ = "0.0.1"
__all__ = ["storage", "server", "client"]