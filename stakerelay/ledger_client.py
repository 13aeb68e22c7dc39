# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Ledger Client

Destination chain access: the vault contract (register / mint / queries) and
the staked token (balances).

Two implementations share the LedgerClient interface:

  Web3LedgerClient - real EVM chain via web3 + eth_account. web3 is blocking,
                     so every call runs in the default executor and is awaited.
  LocalLedger      - in-process vault that applies the same contract rules.
                     Used by --simulate and by the tests.

Usage:
    ledger = Web3LedgerClient(cfg.evm_rpc_url, cfg.private_key,
                              cfg.vault_address, cfg.token_address)
    tx_hash = await ledger.register_deposit(txid, user, amount, unlock, "fp1")
    receipt = await ledger.get_receipt(tx_hash)
"""

import asyncio
import functools
import hashlib
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set

from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound
from eth_account import Account

from .errors import ChainCallError, LedgerRevertError
from .types import Deposit, TxReceipt, TOKEN_SCALE
from .utils import mask_secret

log = logging.getLogger(__name__)

# =============================================================================
# CONTRACT ABIs (minimal)
# =============================================================================

VAULT_ABI = [
    {
        "name": "registerBabylonDeposit",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "btcTxHash", "type": "string"},
            {"name": "user", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "unlockTime", "type": "uint256"},
            {"name": "finalityProvider", "type": "string"}
        ],
        "outputs": []
    },
    {
        "name": "mintStBTC",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "btcTxHash", "type": "string"}],
        "outputs": []
    },
    {
        "name": "getDeposit",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "btcTxHash", "type": "string"}],
        "outputs": [
            {"name": "user", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "unlockTime", "type": "uint256"},
            {"name": "finalityProvider", "type": "string"},
            {"name": "timestamp", "type": "uint256"},
            {"name": "processed", "type": "bool"}
        ]
    },
    {
        "name": "isFinalityProviderAuthorized",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "provider", "type": "string"}],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "userBalances",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "totalDeposits",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "totalSupply",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

REVERT_PREFIX = "execution reverted:"


def clean_revert_reason(message: str) -> str:
    """Strip the node's 'execution reverted:' prefix from a revert message."""
    message = (message or "").strip()
    if message.lower().startswith(REVERT_PREFIX):
        message = message[len(REVERT_PREFIX):].strip()
    return message or "execution reverted"


# =============================================================================
# INTERFACE
# =============================================================================

class LedgerClient:
    """Async interface to the destination ledger."""

    address: str = ""

    async def register_deposit(self, tx_id: str, user: str, amount: int,
                               unlock_time: int, provider_id: str) -> str:
        """Submit a deposit registration. Returns the transaction hash."""
        raise NotImplementedError

    async def mint(self, tx_id: str) -> str:
        """Submit the mint for a registered deposit. Returns the transaction hash."""
        raise NotImplementedError

    async def get_deposit(self, tx_id: str) -> Optional[Deposit]:
        """Registered deposit, or None when unknown."""
        raise NotImplementedError

    async def is_provider_authorized(self, provider_id: str) -> bool:
        raise NotImplementedError

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt, or None while the transaction is pending."""
        raise NotImplementedError

    async def get_revert_reason(self, tx_hash: str) -> Optional[str]:
        return None

    async def get_token_balance(self, address: str) -> int:
        raise NotImplementedError

    async def get_total_supply(self) -> int:
        raise NotImplementedError

    async def get_gas_balance(self) -> int:
        raise NotImplementedError

    async def get_network_info(self) -> Dict[str, Any]:
        return {}


# =============================================================================
# WEB3 IMPLEMENTATION
# =============================================================================

class Web3LedgerClient(LedgerClient):
    """Vault + token access over JSON-RPC using web3."""

    def __init__(self, rpc_url: str, private_key: str, vault_address: str,
                 token_address: str = "", chain_id: Optional[int] = None,
                 gas_limit: int = 500000, w3: Optional[Web3] = None):
        if not private_key:
            raise ValueError("Private key not configured")
        if not vault_address:
            raise ValueError("Vault contract address not configured")

        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        self.chain_id = chain_id
        self.gas_limit = gas_limit

        self.vault = self.w3.eth.contract(
            address=Web3.to_checksum_address(vault_address),
            abi=VAULT_ABI
        )
        self.token = None
        if token_address:
            self.token = self.w3.eth.contract(
                address=Web3.to_checksum_address(token_address),
                abi=ERC20_ABI
            )

        log.info(f"Ledger client on {rpc_url}")
        log.info(f"  Vault: {vault_address}")
        log.info(f"  Token: {token_address or '(none)'}")
        log.info(f"  Relayer: {self.address} (key {mask_secret(private_key)})")

    async def _run(self, fn: Callable, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    # -------------------------------------------------------------------------
    # Sync internals (executor thread)
    # -------------------------------------------------------------------------

    def _send(self, contract_fn) -> str:
        """Simulate, sign and broadcast a contract call."""
        try:
            contract_fn.call({"from": self.address})
        except ContractLogicError as e:
            raise LedgerRevertError(clean_revert_reason(getattr(e, "message", None) or str(e)))

        try:
            tx = contract_fn.build_transaction({
                "from": self.address,
                "gas": self.gas_limit,
                "gasPrice": self.w3.eth.gas_price,
                "nonce": self.w3.eth.get_transaction_count(self.address, "pending"),
                "chainId": self.chain_id or self.w3.eth.chain_id,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise LedgerRevertError(clean_revert_reason(getattr(e, "message", None) or str(e)))
        except Exception as e:
            raise ChainCallError(f"Failed to send transaction: {e}") from e

        return Web3.to_hex(tx_hash)

    def _register_sync(self, tx_id, user, amount, unlock_time, provider_id) -> str:
        fn = self.vault.functions.registerBabylonDeposit(
            tx_id, Web3.to_checksum_address(user), int(amount), int(unlock_time), provider_id
        )
        return self._send(fn)

    def _mint_sync(self, tx_id) -> str:
        return self._send(self.vault.functions.mintStBTC(tx_id))

    def _get_deposit_sync(self, tx_id) -> Optional[Deposit]:
        user, amount, unlock_time, provider_id, timestamp, processed = \
            self.vault.functions.getDeposit(tx_id).call()
        if int(timestamp) == 0:
            return None
        return Deposit(
            tx_id=tx_id,
            user=user,
            amount=int(amount),
            unlock_time=int(unlock_time),
            provider_id=provider_id,
            timestamp=int(timestamp),
            processed=bool(processed),
        )

    def _get_receipt_sync(self, tx_hash) -> Optional[TxReceipt]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
        )

    def _get_revert_reason_sync(self, tx_hash) -> Optional[str]:
        """Replay a failed transaction at its block to recover the reason."""
        tx = self.w3.eth.get_transaction(tx_hash)
        receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        call = {
            "from": tx["from"],
            "to": tx["to"],
            "data": tx["input"],
            "value": tx.get("value", 0),
        }
        try:
            self.w3.eth.call(call, receipt["blockNumber"])
        except ContractLogicError as e:
            return clean_revert_reason(getattr(e, "message", None) or str(e))
        return None

    def _network_info_sync(self) -> Dict[str, Any]:
        return {
            "chain_id": self.w3.eth.chain_id,
            "block_number": self.w3.eth.block_number,
            "gas_price_gwei": float(Web3.from_wei(self.w3.eth.gas_price, "gwei")),
        }

    # -------------------------------------------------------------------------
    # Async interface
    # -------------------------------------------------------------------------

    async def register_deposit(self, tx_id, user, amount, unlock_time, provider_id) -> str:
        return await self._run(self._register_sync, tx_id, user, amount, unlock_time, provider_id)

    async def mint(self, tx_id) -> str:
        return await self._run(self._mint_sync, tx_id)

    async def get_deposit(self, tx_id) -> Optional[Deposit]:
        return await self._run(self._get_deposit_sync, tx_id)

    async def is_provider_authorized(self, provider_id) -> bool:
        fn = self.vault.functions.isFinalityProviderAuthorized(provider_id).call
        return bool(await self._run(fn))

    async def get_receipt(self, tx_hash) -> Optional[TxReceipt]:
        return await self._run(self._get_receipt_sync, tx_hash)

    async def get_revert_reason(self, tx_hash) -> Optional[str]:
        try:
            return await self._run(self._get_revert_reason_sync, tx_hash)
        except Exception as e:
            log.debug(f"Revert reason lookup failed for {tx_hash}: {e}")
            return None

    async def get_token_balance(self, address) -> int:
        if self.token is None:
            fn = self.vault.functions.userBalances(Web3.to_checksum_address(address)).call
        else:
            fn = self.token.functions.balanceOf(Web3.to_checksum_address(address)).call
        return int(await self._run(fn))

    async def get_total_supply(self) -> int:
        if self.token is None:
            return int(await self._run(self.vault.functions.totalDeposits().call))
        return int(await self._run(self.token.functions.totalSupply().call))

    async def get_gas_balance(self) -> int:
        return int(await self._run(self.w3.eth.get_balance, self.address))

    async def get_network_info(self) -> Dict[str, Any]:
        return await self._run(self._network_info_sync)


# =============================================================================
# LOCAL (IN-PROCESS) IMPLEMENTATION
# =============================================================================

DEFAULT_AUTHORIZED_PROVIDERS = ("fp1", "fp2")


class LocalLedger(LedgerClient):
    """
    In-process vault with the contract's checks and revert messages.

    Every mutating call is mined immediately; receipts are available at once.
    `caller` is the identity used for calls and must equal `relayer` unless a
    test wants to exercise "Only relayer can call".
    """

    def __init__(self, relayer: str = "0x" + "11" * 20,
                 authorized: Iterable[str] = DEFAULT_AUTHORIZED_PROVIDERS,
                 clock: Callable[[], float] = time.time,
                 gas_balance: int = 10 ** 18):
        self.relayer = relayer
        self.caller = relayer
        self.address = relayer
        self.clock = clock
        self.paused = False
        self.gas_balance = gas_balance
        self.authorized: Set[str] = set(authorized)

        self.deposits: Dict[str, Deposit] = {}
        self.balances: Dict[str, int] = {}
        self.total_deposits = 0
        self.receipts: Dict[str, TxReceipt] = {}
        self.revert_reasons: Dict[str, str] = {}
        self.block_number = 0
        self.calls: list = []

    # -- admin ----------------------------------------------------------------

    def authorize_provider(self, provider_id: str) -> None:
        self.authorized.add(provider_id)

    def deauthorize_provider(self, provider_id: str) -> None:
        self.authorized.discard(provider_id)

    def pause(self) -> None:
        self.paused = True

    def unpause(self) -> None:
        self.paused = False

    # -- internals ------------------------------------------------------------

    def _require(self, condition: bool, reason: str) -> None:
        if not condition:
            raise LedgerRevertError(reason)

    def _guard(self) -> None:
        self._require(not self.paused, "Pausable: paused")
        self._require(self.caller == self.relayer, "Only relayer can call")

    def _mine(self, op: str, *args) -> str:
        self.block_number += 1
        seed = f"{op}:{self.block_number}:{':'.join(str(a) for a in args)}"
        tx_hash = "0x" + hashlib.sha256(seed.encode()).hexdigest()
        self.receipts[tx_hash] = TxReceipt(
            tx_hash=tx_hash, status=1, block_number=self.block_number, gas_used=21000
        )
        return tx_hash

    # -- interface ------------------------------------------------------------

    async def register_deposit(self, tx_id, user, amount, unlock_time, provider_id) -> str:
        self.calls.append(("register", tx_id))
        self._guard()
        self._require(bool(tx_id), "Invalid transaction hash")
        self._require(bool(user) and user != "0x" + "00" * 20, "Invalid user address")
        self._require(amount > 0, "Amount must be greater than 0")
        self._require(unlock_time > int(self.clock()), "Unlock time must be in future")
        self._require(provider_id in self.authorized, "Unauthorized finality provider")
        self._require(tx_id not in self.deposits, "Deposit already registered")

        self.deposits[tx_id] = Deposit(
            tx_id=tx_id,
            user=user,
            amount=int(amount),
            unlock_time=int(unlock_time),
            provider_id=provider_id,
            timestamp=int(self.clock()),
        )
        return self._mine("register", tx_id)

    async def mint(self, tx_id) -> str:
        self.calls.append(("mint", tx_id))
        self._guard()
        deposit = self.deposits.get(tx_id)
        self._require(deposit is not None, "Deposit not registered")
        self._require(not deposit.processed, "Deposit already processed")

        minted = deposit.amount * TOKEN_SCALE
        deposit.processed = True
        self.balances[deposit.user] = self.balances.get(deposit.user, 0) + minted
        self.total_deposits += minted
        return self._mine("mint", tx_id)

    async def get_deposit(self, tx_id) -> Optional[Deposit]:
        return self.deposits.get(tx_id)

    async def is_provider_authorized(self, provider_id) -> bool:
        return provider_id in self.authorized

    async def get_receipt(self, tx_hash) -> Optional[TxReceipt]:
        return self.receipts.get(tx_hash)

    async def get_revert_reason(self, tx_hash) -> Optional[str]:
        return self.revert_reasons.get(tx_hash)

    async def get_token_balance(self, address) -> int:
        return self.balances.get(address, 0)

    async def get_total_supply(self) -> int:
        return self.total_deposits

    async def get_gas_balance(self) -> int:
        return self.gas_balance

    async def get_network_info(self) -> Dict[str, Any]:
        return {"chain_id": 1337, "block_number": self.block_number, "gas_price_gwei": 0.0}
