"""
Remote ledger service client.
"""

from ledger_sync.gateway.client import GatewayError, LedgerGateway

__all__ = ["GatewayError", "LedgerGateway"]
