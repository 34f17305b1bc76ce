import json
from pathlib import Path
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract
from web3.middleware import SignAndSendRawMiddlewareBuilder

CONTRACTS_DIR = Path(__file__).resolve().parent.parent / "contracts"


class ContractUtility:
    """
    Utility for contract interaction and ABI loading on one chain.

    Can be used in two modes:
    1. Full mode: Initialize with an RPC URL and secret for signed transactions
    2. ABI-only mode: Initialize with empty strings to just load ABIs
    """

    def __init__(self, rpc_url: str = "", secret: str = "", request_timeout: int = 30):
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: HTTP(S) RPC endpoint (optional for ABI-only mode)
            secret: Private key used to sign transactions (optional for ABI-only mode)
            request_timeout: Timeout for a single RPC request, in seconds
        """
        self.rpc_url = rpc_url or None
        self.request_timeout = request_timeout
        self.account: LocalAccount | None = None
        if rpc_url and secret:
            self.w3 = self.setup_web3_middleware(secret)
        elif rpc_url:
            # Read-only connection
            self.w3 = self._make_web3()
        else:
            self.w3 = None

    def _make_web3(self) -> Web3:
        return Web3(Web3.HTTPProvider(
            self.rpc_url, request_kwargs={"timeout": self.request_timeout}
        ))

    def setup_web3_middleware(self, secret: str) -> Web3:
        if not secret:
            raise ValueError("Missing relayer private key. Please set RELAYER_PRIVATE_KEY.")

        account: LocalAccount = Account.from_key(secret)
        w3 = self._make_web3()
        w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(account))
        w3.eth.default_account = account.address
        self.account = account
        return w3

    def get_contract(self, contract_name: str, address: str) -> Contract:
        """Bind the bundled ABI of ``contract_name`` to ``address``."""
        if self.w3 is None:
            raise ValueError("ContractUtility was created in ABI-only mode")
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=self.get_contract_abi(contract_name),
        )

    @staticmethod
    def get_contract_abi(contract_name: str) -> list[dict[str, Any]]:
        """Fetches ABI of the given contract from the contracts folder"""
        contract_path = CONTRACTS_DIR / f"{contract_name}.json"

        with contract_path.open() as file:
            contract_data = json.load(file)

        return contract_data["abi"]
