"""Escrow ledger adapters.

``Ledger`` is the interface the reconcilers depend on. ``EscrowLedger``
implements it over the wallet node JSON-RPC API; the blocking requests calls
run in a worker thread so lock leases keep being extended meanwhile.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from deals.exceptions import Reason
from .rpc import (
    LedgerRPC, RPCError, NodeConnectionError, NodeAuthError,
    NodeRateLimitError, WalletError
)

logger = logging.getLogger(__name__)

# Amounts are stored as NUMERIC(20, 9)
AMOUNT_QUANTUM = Decimal('0.000000001')

class LedgerError(Exception):
    """Base exception for ledger operations"""
    def __init__(self, message: str, reason: Reason = Reason.UNKNOWN_ERROR, tx_hash: Optional[str] = None):
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(message)

class LedgerNetworkError(LedgerError):
    def __init__(self, message: str):
        super().__init__(message, Reason.NETWORK_ERROR)

class LedgerRateLimitError(LedgerError):
    def __init__(self, message: str):
        super().__init__(message, Reason.RATE_LIMIT_EXCEEDED)

class TransactionNotFoundError(LedgerError):
    """Raised when a submitted transfer cannot be found on the ledger"""
    def __init__(self, tx_hash: str, message: str = ""):
        super().__init__(message or f"Transaction {tx_hash} not found on ledger",
                         Reason.TRANSACTION_NOT_FOUND, tx_hash)

class Transfer(BaseModel):
    """An inbound transfer seen on the ledger"""
    tx_hash: str
    address: str
    amount: Decimal
    confirmations: int = 0

def quantize(amount) -> Decimal:
    return Decimal(str(amount)).quantize(AMOUNT_QUANTUM)

class Ledger:
    """Ledger interface used by the reconcilers"""

    async def generate_escrow_address(self, deal_id: int) -> str:
        raise NotImplementedError

    async def find_inbound_transfer(self, address: str, amount: Decimal) -> Optional[Transfer]:
        """Return a transfer of exactly amount into address, or None."""
        raise NotImplementedError

    async def submit_transfer(self, from_address: str, to_address: str, amount: Decimal, memo: str) -> str:
        """Send amount and return the transaction hash."""
        raise NotImplementedError

    async def transaction_exists(self, tx_hash: str, address: str) -> bool:
        raise NotImplementedError

class EscrowLedger(Ledger):
    """Ledger backed by the escrow wallet node

    Args:
        rpc: Wallet JSON-RPC client
        min_confirmations: Confirmations an inbound transfer needs to count
        page_size: Wallet transactions fetched per listtransactions call
    """

    def __init__(self, rpc: LedgerRPC, min_confirmations: int = 1, page_size: int = 500):
        self.rpc = rpc
        self.min_confirmations = min_confirmations
        self.page_size = page_size

    async def _call(self, method: str, *args):
        try:
            return await asyncio.to_thread(getattr(self.rpc, method), *args)
        except NodeRateLimitError as e:
            raise LedgerRateLimitError(str(e)) from e
        except (NodeConnectionError, NodeAuthError) as e:
            raise LedgerNetworkError(str(e)) from e
        except RPCError as e:
            raise LedgerError(str(e)) from e

    async def generate_escrow_address(self, deal_id: int) -> str:
        address = await self._call('getnewaddress', f"deal-{deal_id}")
        logger.info(f"Generated escrow address {address} for deal {deal_id}")
        return address

    async def find_inbound_transfer(self, address: str, amount: Decimal) -> Optional[Transfer]:
        expected = quantize(amount)
        # An escrow whose confirmed total is short of the price holds no matching transfer
        received = await self._call('getreceivedbyaddress', address, self.min_confirmations)
        if quantize(received or 0) < expected:
            return None

        skip = 0
        while True:
            transactions = await self._call('listtransactions', "*", self.page_size, skip) or []
            transfer = self._match_transfer(transactions, address, expected)
            if transfer is not None:
                return transfer
            if len(transactions) < self.page_size:
                return None
            skip += self.page_size

    def _match_transfer(self, transactions, address: str, expected: Decimal) -> Optional[Transfer]:
        for tx in transactions:
            if tx.get('category') != 'receive' or tx.get('address') != address:
                continue
            if tx.get('confirmations', 0) < self.min_confirmations:
                continue
            received = quantize(abs(Decimal(str(tx.get('amount', 0)))))
            if received == expected:
                return Transfer(
                    tx_hash=tx['txid'],
                    address=address,
                    amount=received,
                    confirmations=tx.get('confirmations', 0)
                )
            logger.debug(f"Ignoring transfer {tx.get('txid')} to {address}: {received} != {expected}")
        return None

    async def submit_transfer(self, from_address: str, to_address: str, amount: Decimal, memo: str) -> str:
        tx_hash = await self._call(
            'sendfrom', from_address, to_address, float(quantize(amount)), self.min_confirmations, memo
        )
        logger.info(f"Submitted transfer {tx_hash}: {amount} from {from_address} to {to_address}")
        return tx_hash

    async def transaction_exists(self, tx_hash: str, address: str) -> bool:
        try:
            tx = await self._call('gettransaction', tx_hash)
        except LedgerError as e:
            cause = e.__cause__
            if isinstance(cause, WalletError) and cause.code == -5:
                return False
            raise
        details = tx.get('details') or []
        return not details or any(d.get('address') == address for d in details)

def create_ledger(settings) -> EscrowLedger:
    """Build the wallet-backed ledger from settings."""
    rpc = LedgerRPC(
        settings['ledger_rpc_url'],
        settings.get('ledger_rpc_user', ''),
        settings.get('ledger_rpc_password', '')
    )
    return EscrowLedger(rpc)

__all__ = [
    'Ledger', 'EscrowLedger', 'Transfer', 'LedgerError', 'LedgerNetworkError',
    'LedgerRateLimitError', 'TransactionNotFoundError', 'create_ledger', 'quantize',
]
