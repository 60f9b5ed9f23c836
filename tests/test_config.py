import pytest

from herowatch.config import AppConfig
from herowatch.config.settings import _coerce_env_value
from herowatch.domain.errors import ConfigError


def load(env=None, path=None) -> AppConfig:
    return AppConfig.load(settings_path=path, env=env or {}, use_dotenv=False)


def test_defaults_are_valid_and_safe():
    cfg = load()
    assert cfg.notifier.dry_run is True
    assert cfg.backfill.enabled is False
    assert cfg.death.enabled is True
    assert cfg.chain.staking_contract_address == "0x06d7ee1d50828ca96e11890a1601f6fe61f1e584"
    assert cfg.metadata.base_uri == "https://api.onchainheroes.xyz/hero/"
    assert cfg.reveal.max_attempts == 5
    assert cfg.overrides == []


def test_env_overrides_win_over_file(tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text('[reveal]\nsettle_delay_seconds = 5\nmax_attempts = 3\n[backfill]\nenabled = true\n')

    cfg = load(env={"RETRY_MAX_ATTEMPTS": "7", "SETTLE_DELAY": ""}, path=str(path))

    assert cfg.reveal.settle_delay_seconds == 5.0
    assert cfg.reveal.max_attempts == 7
    assert cfg.backfill.enabled is True
    assert cfg.loaded_files == [str(path)]
    sources = {(o.key, o.source) for o in cfg.overrides}
    assert ("reveal.max_attempts", "settings.toml") in sources
    assert ("reveal.max_attempts", "env") in sources


def test_contract_address_from_env_stays_a_string():
    addr = "0x00000000000000000000000000000000000000ff"
    cfg = load(env={"STAKING_CONTRACT_ADDRESS": addr})
    assert cfg.chain.staking_contract_address == addr


def test_live_posting_requires_credentials():
    with pytest.raises(ConfigError):
        load(env={"DRY_RUN": "false"})

    cfg = load(
        env={
            "DRY_RUN": "false",
            "TWITTER_API_KEY": "k",
            "TWITTER_API_SECRET": "s",
            "TWITTER_ACCESS_TOKEN": "t",
            "TWITTER_ACCESS_SECRET": "ts",
        }
    )
    assert cfg.notifier.dry_run is False


@pytest.mark.parametrize(
    "env",
    [
        {"STAKING_CONTRACT_ADDRESS": "0x1234"},
        {"WS_RPC_URL": "https://not-a-socket"},
        {"RETRY_MAX_ATTEMPTS": "0"},
        {"RETRY_MAX_ATTEMPTS": "many"},
        {"BULK_START_TOKEN": "10", "BULK_END_TOKEN": "5"},
        {"RECONNECT_BASE_DELAY": "60"},
    ],
)
def test_invalid_values_rejected(env):
    with pytest.raises(ConfigError):
        load(env=env)


def test_unknown_keys_and_missing_file_rejected(tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text("[reveal]\nsettle_delay = 5\n")
    with pytest.raises(ConfigError):
        load(path=str(path))
    with pytest.raises(ConfigError):
        load(path=str(tmp_path / "missing.toml"))


def test_bad_toml_rejected(tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text("[reveal\n")
    with pytest.raises(ConfigError):
        load(path=str(path))


def test_env_value_coercion():
    assert _coerce_env_value("true") is True
    assert _coerce_env_value("False") is False
    assert _coerce_env_value("15 # seconds") == 15
    assert _coerce_env_value("1.5") == 1.5
    assert _coerce_env_value("0x10") == "0x10"
    assert _coerce_env_value("redis://r:6379/0") == "redis://r:6379/0"


def test_log_summary_masks_secrets(capsys):
    from loguru import logger

    sink_id = logger.add(lambda msg: print(msg, end=""), level="INFO")
    try:
        load(
            env={
                "DRY_RUN": "false",
                "TWITTER_API_KEY": "super-secret-key",
                "TWITTER_API_SECRET": "s",
                "TWITTER_ACCESS_TOKEN": "t",
                "TWITTER_ACCESS_SECRET": "ts",
            }
        ).log_summary()
    finally:
        logger.remove(sink_id)
    out = capsys.readouterr().out
    assert "CONFIG_OVERRIDE | key=notifier.api_key" in out
    assert "super-secret-key" not in out


def test_string_settings_keep_digit_only_values():
    cfg = load(env={"TWITTER_ACCESS_TOKEN": "0123", "TWITTER_API_KEY": "1e5", "WS_RPC_URL": "wss://node/ws"})
    assert cfg.notifier.access_token == "0123"
    assert cfg.notifier.api_key == "1e5"
    assert _coerce_env_value("0123", "") == "0123"
    assert _coerce_env_value("0123", 0) == 123


def test_fetch_limit_from_env():
    assert load(env={"MAX_CONCURRENT_FETCHES": "4"}).reveal.max_concurrent_fetches == 4
    with pytest.raises(ConfigError):
        load(env={"MAX_CONCURRENT_FETCHES": "0"})
