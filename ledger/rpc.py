"""JSON-RPC client for the escrow wallet node"""
import requests
from typing import Any, Optional

class RPCError(Exception):
    """Base exception for RPC errors"""
    def __init__(self, message: str, code: Optional[int] = None, method: Optional[str] = None):
        self.code = code
        self.method = method
        super().__init__(f"RPC Error [{code}] in {method}: {message}" if code else message)

class NodeConnectionError(RPCError):
    """Raised when connection to node fails"""
    pass

class NodeAuthError(RPCError):
    """Raised when authentication failed"""
    pass

class NodeRateLimitError(RPCError):
    """Raised when the node rejects calls with HTTP 429"""
    pass

class WalletError(RPCError):
    """Wallet error codes and messages

    Common error codes:
    -1  - General error during processing
    -5  - Invalid address or non-wallet transaction id
    -6  - Insufficient funds
    -8  - Invalid parameter combination
    -25 - Error processing transaction
    -26 - Transaction already in chain
    """
    ERROR_MESSAGES = {
        -1: "General error during processing",
        -5: "Invalid address or non-wallet transaction id",
        -6: "Insufficient funds",
        -8: "Invalid parameter combination",
        -25: "Error processing transaction",
        -26: "Transaction already in chain",
    }

    def __init__(self, message: str, code: int, method: str):
        standard_msg = self.ERROR_MESSAGES.get(code, "Unknown error")
        full_msg = f"{standard_msg} - {message}" if message != standard_msg else message
        super().__init__(full_msg, code, method)

class RPCMethod:
    """Descriptor class for RPC methods"""
    def __init__(self, method_name: str):
        self.method_name = method_name

    def __get__(self, obj, objtype=None):
        if obj is None:
            return self

        def caller(*args) -> Any:
            return obj._call_method(self.method_name, *args)

        return caller

class LedgerRPC:
    """Escrow wallet RPC client

    Args:
        url: Node RPC endpoint
        user: RPC user, empty for no auth
        password: RPC password
        timeout: Seconds before a call is abandoned
    """

    def __init__(self, url: str, user: str = "", password: str = "", timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

        self.session = requests.Session()
        if user:
            self.session.auth = (user, password)
        self.session.headers['content-type'] = 'application/json'

        self._request_id = 0

    def _get_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _call_method(self, method: str, *args) -> Any:
        """Make RPC call to the wallet node

        Args:
            method: RPC method name
            *args: Method arguments

        Returns:
            Response from node

        Raises:
            NodeConnectionError: Connection to node failed
            NodeAuthError: Authentication failed
            NodeRateLimitError: Node is throttling calls
            WalletError: Node returned a wallet error
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": list(args),
            "id": self._get_request_id()
        }

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise NodeConnectionError(f"Request timed out after {self.timeout} seconds", method=method) from e
        except requests.exceptions.RequestException as e:
            raise NodeConnectionError(f"Failed to connect to wallet node at {self.url}", method=method) from e

        if response.status_code == 401:
            raise NodeAuthError("Authentication failed - check ledger_rpc_user/ledger_rpc_password", method=method)
        if response.status_code == 429:
            raise NodeRateLimitError("Wallet node rate limit exceeded", method=method)

        try:
            result = response.json()
        except ValueError as e:
            raise NodeConnectionError(f"Invalid response format: {str(e)}", method=method) from e

        # The node reports wallet errors with HTTP 500 and a JSON body
        if isinstance(result, dict) and result.get('error'):
            error = result['error']
            raise WalletError(error.get('message', 'Unknown error'), error.get('code', -1), method)

        try:
            response.raise_for_status()
            return result['result']
        except requests.exceptions.HTTPError as e:
            raise NodeConnectionError(f"HTTP error occurred: {str(e)}", method=method) from e
        except (KeyError, TypeError) as e:
            raise NodeConnectionError(f"Invalid response format: {str(e)}", method=method) from e

    getnewaddress = RPCMethod('getnewaddress')
    listtransactions = RPCMethod('listtransactions')
    gettransaction = RPCMethod('gettransaction')
    sendfrom = RPCMethod('sendfrom')
    getreceivedbyaddress = RPCMethod('getreceivedbyaddress')
