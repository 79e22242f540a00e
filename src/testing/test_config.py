import json
import pytest
import yaml
from utils.config import (Config, ConfigError, load_patterns, parse_patterns, save_patterns,
                          FOUR_MEME_TOKEN_MANAGER_V2)
from fakes import WHALE, make_pattern, pattern_dict


class TestConfigLoading:

    def test_defaults_are_valid(self):
        config = Config.from_dict({})
        assert config.scanner.target_contract == FOUR_MEME_TOKEN_MANAGER_V2
        assert config.price_tracking.partial_threshold_pct == 10.0
        assert config.trading.dry_run is True

    def test_yaml_file_overrides_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv('BSC_RPC_URL', raising=False)
        monkeypatch.delenv('TRADER_WALLET_ADDRESS', raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            'safety': {'max_trades_per_hour': 3, 'max_trades_per_day': 7},
            'copy_trading': {'enabled': True, 'tracked_wallets': [WHALE]},
        }))
        config = Config(str(path))
        assert config.safety.max_trades_per_hour == 3
        assert config.copy_trading.tracked_wallets == [WHALE]
        assert config.safety.emergency_stop is False

    def test_environment_wins(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv('BSC_RPC_URL', "http://localhost:8545")
        monkeypatch.setenv('TRADER_WALLET_ADDRESS', WHALE)
        config = Config(str(tmp_path / "missing.yaml"))
        assert config.chain.rpc_url == "http://localhost:8545"
        assert config.trading.wallet_address == WHALE

    def test_unknown_section_rejected(self):
        with pytest.raises(ConfigError, match="Unknown config sections"):
            Config.from_dict({'telegram': {}})

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="Unknown keys in 'safety'"):
            Config.from_dict({'safety': {'max_trades_per_week': 1}})

    @pytest.mark.parametrize("section,values", [
        ('scanner', {'scan_interval_seconds': 0}),
        ('scanner', {'max_retries': -1}),
        ('safety', {'max_trades_per_hour': 0}),
        ('price_tracking', {'partial_window_seconds': -5}),
        ('price_tracking', {'partial_sell_pct': 100}),
        ('copy_trading', {'copy_ratio': 1.5}),
        ('copy_trading', {'min_position_size': 1.0, 'max_position_size': 0.1}),
        ('copy_trading', {'tracked_wallets': ["0x1234"]}),
        ('scanner', {'target_contract': "not-an-address"}),
        ('scanner', {'selectors': {"0x519ebb10": "mint"}}),
        ('scanner', {'selectors': {"519ebb10": "create_token"}}),
    ])
    def test_invalid_values_rejected(self, section, values):
        with pytest.raises(ConfigError):
            Config.from_dict({section: values})


class TestPatternFiles:

    def test_parse_keeps_declaration_order(self):
        patterns = parse_patterns({'patterns': [pattern_dict("b"), pattern_dict("a")]})
        assert [p.id for p in patterns] == ["b", "a"]

    def test_bare_list_accepted(self):
        assert len(parse_patterns([pattern_dict("a")])) == 1

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ConfigError, match="Duplicate"):
            parse_patterns([pattern_dict("a"), pattern_dict("a")])

    @pytest.mark.parametrize("overrides", [
        {'gas_price': (0.2, 0.1)},
        {'gas_limit': (2000000, 1000000)},
        {'value': (1.0, 0.5)},
        {'unit': "ether"},
        {'buy_amount': 0},
        {'confirmations': -1},
    ])
    def test_invalid_pattern_rejected(self, overrides):
        with pytest.raises(ConfigError):
            parse_patterns([pattern_dict("a", **overrides)])

    def test_missing_field_is_config_error(self):
        raw = pattern_dict("a")
        del raw['gasLimit']
        with pytest.raises(ConfigError, match="Malformed"):
            parse_patterns([raw])

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "patterns.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_patterns(str(path))

    def test_save_writes_camel_case(self, tmp_path):
        path = tmp_path / "nested" / "patterns.json"
        save_patterns(str(path), [make_pattern(pattern_id="a")])
        raw = json.loads(path.read_text())
        assert raw['patterns'][0]['gasPrice']['min'] == 0.1
        assert raw['patterns'][0]['filters']['maxTransactionValue'] == 1.0
        assert not (tmp_path / "nested" / "patterns.json.tmp").exists()
