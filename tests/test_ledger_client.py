"""Tests for the in-process vault and the web3 ledger client."""

from unittest.mock import MagicMock

import pytest
from web3.exceptions import ContractLogicError, TransactionNotFound

from stakerelay.errors import ChainCallError, LedgerRevertError
from stakerelay.ledger_client import Web3LedgerClient, clean_revert_reason

from tests.conftest import NOW, TX_A, USER

# Well-known throwaway key from the eth-account docs
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
VAULT = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20


class TestLocalLedger:
    """Vault contract rules."""

    @pytest.mark.asyncio
    async def test_register_and_mint(self, ledger):
        reg_hash = await ledger.register_deposit(TX_A, USER, 250_000_000, NOW + 86400, "fp1")
        mint_hash = await ledger.mint(TX_A)

        assert (await ledger.get_receipt(reg_hash)).succeeded
        assert (await ledger.get_receipt(mint_hash)).succeeded
        deposit = await ledger.get_deposit(TX_A)
        assert deposit.processed
        assert deposit.timestamp == NOW
        assert await ledger.get_token_balance(USER) == 2_500_000_000_000_000_000
        assert await ledger.get_total_supply() == 2_500_000_000_000_000_000

    @pytest.mark.asyncio
    async def test_unknown_deposit(self, ledger):
        assert await ledger.get_deposit(TX_A) is None
        with pytest.raises(LedgerRevertError, match="Deposit not registered"):
            await ledger.mint(TX_A)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs, reason", [
        ({"tx_id": ""}, "Invalid transaction hash"),
        ({"user": ""}, "Invalid user address"),
        ({"amount": 0}, "Amount must be greater than 0"),
        ({"unlock_time": NOW}, "Unlock time must be in future"),
        ({"provider_id": "fp3"}, "Unauthorized finality provider"),
    ])
    async def test_parameter_checks(self, ledger, kwargs, reason):
        args = {"tx_id": TX_A, "user": USER, "amount": 1,
                "unlock_time": NOW + 1, "provider_id": "fp1"}
        args.update(kwargs)
        with pytest.raises(LedgerRevertError) as exc:
            await ledger.register_deposit(**args)
        assert exc.value.reason == reason

    @pytest.mark.asyncio
    async def test_paused(self, ledger):
        ledger.pause()
        with pytest.raises(LedgerRevertError, match="Pausable: paused"):
            await ledger.register_deposit(TX_A, USER, 1, NOW + 1, "fp1")
        ledger.unpause()
        await ledger.register_deposit(TX_A, USER, 1, NOW + 1, "fp1")

    @pytest.mark.asyncio
    async def test_only_relayer(self, ledger):
        ledger.caller = "0x" + "99" * 20
        with pytest.raises(LedgerRevertError, match="Only relayer can call"):
            await ledger.register_deposit(TX_A, USER, 1, NOW + 1, "fp1")

    @pytest.mark.asyncio
    async def test_provider_authorization(self, ledger):
        assert await ledger.is_provider_authorized("fp1")
        assert not await ledger.is_provider_authorized("fp3")
        ledger.authorize_provider("fp3")
        ledger.deauthorize_provider("fp1")
        assert await ledger.is_provider_authorized("fp3")
        assert not await ledger.is_provider_authorized("fp1")


class TestRevertReason:

    def test_strips_prefix(self):
        assert clean_revert_reason("execution reverted: Deposit already registered") == \
            "Deposit already registered"

    def test_empty(self):
        assert clean_revert_reason("") == "execution reverted"


@pytest.fixture
def w3():
    """Web3 stand-in with a mocked vault contract."""
    w3 = MagicMock()
    w3.eth.gas_price = 1_000_000_000
    w3.eth.chain_id = 1337
    w3.eth.block_number = 42
    w3.eth.get_transaction_count.return_value = 0
    w3.eth.send_raw_transaction.return_value = bytes.fromhex("12" * 32)
    w3.eth.contract.side_effect = lambda **_kwargs: MagicMock()
    return w3


@pytest.fixture
def client(w3):
    return Web3LedgerClient("http://localhost:8545", TEST_KEY, VAULT, TOKEN,
                            chain_id=1337, w3=w3)


def tx_params(*_args, **_kwargs):
    return {
        "to": VAULT,
        "value": 0,
        "gas": 500000,
        "gasPrice": 1_000_000_000,
        "nonce": 0,
        "chainId": 1337,
        "data": "0x",
    }


class TestWeb3LedgerClient:
    """Web3 client with a mocked provider."""

    def test_requires_key_and_vault(self, w3):
        with pytest.raises(ValueError, match="Private key"):
            Web3LedgerClient("http://x", "", VAULT, w3=w3)
        with pytest.raises(ValueError, match="Vault"):
            Web3LedgerClient("http://x", TEST_KEY, "", w3=w3)

    @pytest.mark.asyncio
    async def test_register_sends_signed_transaction(self, client, w3):
        fn = client.vault.functions.registerBabylonDeposit.return_value
        fn.build_transaction.side_effect = tx_params

        tx_hash = await client.register_deposit(TX_A, USER, 1, NOW + 1, "fp1")

        assert tx_hash == "0x" + "12" * 32
        fn.call.assert_called_once()
        w3.eth.send_raw_transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_simulated_revert_not_sent(self, client, w3):
        fn = client.vault.functions.mintStBTC.return_value
        fn.call.side_effect = ContractLogicError("execution reverted: Deposit already processed")

        with pytest.raises(LedgerRevertError) as exc:
            await client.mint(TX_A)

        assert exc.value.reason == "Deposit already processed"
        w3.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_failure(self, client, w3):
        fn = client.vault.functions.mintStBTC.return_value
        fn.build_transaction.side_effect = tx_params
        w3.eth.send_raw_transaction.side_effect = ConnectionError("node down")

        with pytest.raises(ChainCallError, match="node down"):
            await client.mint(TX_A)

    @pytest.mark.asyncio
    async def test_get_deposit(self, client):
        call = client.vault.functions.getDeposit.return_value.call
        call.return_value = (USER, 5, NOW + 1, "fp1", NOW, True)

        deposit = await client.get_deposit(TX_A)

        assert deposit.amount == 5
        assert deposit.processed

        call.return_value = ("0x" + "00" * 20, 0, 0, "", 0, False)
        assert await client.get_deposit(TX_A) is None

    @pytest.mark.asyncio
    async def test_receipt(self, client, w3):
        w3.eth.get_transaction_receipt.return_value = {
            "status": 1, "blockNumber": 7, "gasUsed": 21000,
        }
        receipt = await client.get_receipt("0xabc")
        assert receipt.succeeded
        assert receipt.block_number == 7

        w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not yet")
        assert await client.get_receipt("0xabc") is None

    @pytest.mark.asyncio
    async def test_revert_reason_replay(self, client, w3):
        w3.eth.get_transaction.return_value = {
            "from": client.address, "to": VAULT, "input": "0x", "value": 0,
        }
        w3.eth.get_transaction_receipt.return_value = {"blockNumber": 9}
        w3.eth.call.side_effect = ContractLogicError("execution reverted: Pausable: paused")

        assert await client.get_revert_reason("0xabc") == "Pausable: paused"

    @pytest.mark.asyncio
    async def test_balances(self, client, w3):
        client.token.functions.balanceOf.return_value.call.return_value = 10 ** 18
        client.token.functions.totalSupply.return_value.call.return_value = 3 * 10 ** 18
        w3.eth.get_balance.return_value = 5 * 10 ** 15

        assert await client.get_token_balance(USER) == 10 ** 18
        assert await client.get_total_supply() == 3 * 10 ** 18
        assert await client.get_gas_balance() == 5 * 10 ** 15

    @pytest.mark.asyncio
    async def test_network_info(self, client):
        info = await client.get_network_info()
        assert info["chain_id"] == 1337
        assert info["block_number"] == 42
