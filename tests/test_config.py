"""Tests for configuration loading."""
import json
import os

from stakerelay.config import RelayerConfig, load_env_file


class TestFromEnv:

    def test_defaults(self):
        cfg = RelayerConfig.from_env({})
        assert cfg.explorer_url == "https://mempool.space/testnet/api"
        assert cfg.evm_rpc_url == "http://localhost:8545"
        assert cfg.chain_id == 1337
        assert cfg.max_retries == 3
        assert cfg.finality_provider == "fp1"
        assert cfg.lock_duration == 30 * 86400
        assert cfg.staking.epoch_duration == 21600

    def test_overrides(self):
        cfg = RelayerConfig.from_env({
            "STAKERELAY_POLL_INTERVAL": "5",
            "STAKERELAY_ORACLE_MIN_CONFIDENCE": "0.9",
            "STAKERELAY_RELEASE_FAILED_OUTPUTS": "no",
            "STAKERELAY_SLASHING_RATE": "0.1",
            "STAKERELAY_VAULT_ADDRESS": "",
        })
        assert cfg.poll_interval == 5
        assert cfg.oracle_min_confidence == 0.9
        assert cfg.release_failed_outputs is False
        assert cfg.staking.slashing_rate == 0.1
        assert cfg.vault_address == ""

    def test_private_key_fallback(self):
        cfg = RelayerConfig.from_env({"RELAYER_PRIVATE_KEY": "0xabc"})
        assert cfg.private_key == "0xabc"
        cfg = RelayerConfig.from_env({"RELAYER_PRIVATE_KEY": "0xabc",
                                      "STAKERELAY_PRIVATE_KEY": "0xdef"})
        assert cfg.private_key == "0xdef"

    def test_deployments_file(self, tmp_path):
        path = tmp_path / "deployments.json"
        path.write_text(json.dumps({"vault": "0x" + "22" * 20, "stBTC": "0x" + "33" * 20}))

        cfg = RelayerConfig.from_env({"STAKERELAY_DEPLOYMENTS_FILE": str(path)})

        assert cfg.vault_address == "0x" + "22" * 20
        assert cfg.token_address == "0x" + "33" * 20


class TestEnvFile:

    def test_missing_file(self, tmp_path):
        assert load_env_file(str(tmp_path / "nope.env")) == 0

    def test_existing_variables_win(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# relayer\n"
            "STAKERELAY_TEST_A='from-file'\n"
            "STAKERELAY_TEST_B=\"quoted\"\n"
            "not a pair\n"
        )
        monkeypatch.setenv("STAKERELAY_TEST_A", "from-env")
        monkeypatch.delenv("STAKERELAY_TEST_B", raising=False)

        assert load_env_file(str(env_file)) == 2
        assert os.environ["STAKERELAY_TEST_A"] == "from-env"
        assert os.environ["STAKERELAY_TEST_B"] == "quoted"
        monkeypatch.delenv("STAKERELAY_TEST_B")
