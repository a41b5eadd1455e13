"""
Unit tests for configuration loading and validation
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import (
    ConfigManager, ConfigurationError, MatchingConfig, ScoringConfig, SourceConfig,
)


@pytest.fixture(autouse=True)
def reset_singleton():
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


class TestDefaults:
    """Defaults used when no config file is present"""

    def test_missing_file_uses_defaults(self, tmp_path):
        """A missing config file falls back to dataclass defaults"""
        config = ConfigManager(str(tmp_path / "missing.yaml"))

        assert config.matching.name_floor == 0.75
        assert config.matching.max_candidates == 25
        assert config.scoring.entity_levels == {'CRITICAL': 80, 'HIGH': 50, 'MEDIUM': 25}
        assert config.fanout.global_timeout_seconds == 45
        assert config.watcher.alert_capacity == 10000
        assert len(config.lists.sdn_urls) == 3

    def test_default_sources_registered(self, tmp_path):
        config = ConfigManager(str(tmp_path / "missing.yaml"))
        assert set(config.sources) == {
            'ofac', 'wallet', 'pep', 'court_records', 'aleph', 'corporate', 'uk_companies',
            'announcements', 'regulatory', 'adverse_media', 'shipping', 'finreg', 'data_sources',
            'blockchain',
        }
        assert config.sources['court_records'].requires_api_key is True
        assert config.sources['uk_companies'].requires_api_key is True
        assert config.sources['blockchain'].requires_api_key is False

    def test_matching_config_tiers_descend(self):
        """Alias exact outranks substring tiers"""
        cfg = MatchingConfig()
        assert cfg.alias_exact > cfg.name_substring > cfg.alias_substring >= cfg.name_floor

    def test_scoring_config_caps(self):
        cfg = ScoringConfig()
        assert cfg.caps['announcements'] == 70
        assert cfg.weights['regulatory'] == 0.5 and cfg.caps['regulatory'] == 90
        assert cfg.weights['adverse_media'] == 0.4 and cfg.caps['adverse_media'] == 85
        assert cfg.weights['shipping'] == 0.3 and cfg.caps['shipping'] == 70
        assert cfg.weights['finreg'] == 0.4 and cfg.caps['finreg'] == 70
        assert cfg.blockchain_floor_above == 50
        assert cfg.announcement_direct_points == 90
        assert cfg.ofac['match_confidence'] > cfg.ofac['possible_confidence']

    def test_bundled_config_file_loads(self):
        """The config.yaml shipped next to the modules is valid"""
        config = ConfigManager()
        assert config.config_path.name == "config.yaml"
        assert config.sources['announcements'].timeout == 8
        assert config.scoring.weights == ScoringConfig().weights
        assert config.scoring.caps == ScoringConfig().caps


class TestYamlLoading:
    """Loading and merging values from YAML"""

    def test_values_override_defaults(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("""
matching:
  name_floor: 0.8
  max_candidates: 10
scoring:
  ofac:
    match_points: 70
fanout:
  global_timeout_seconds: 20
watcher:
  reconnect_backoff_seconds: 1
  alert_capacity: 500
""")
        config = ConfigManager(str(config_file))

        assert config.matching.name_floor == 0.8
        assert config.matching.max_candidates == 10
        assert config.scoring.ofac['match_points'] == 70
        # Unset keys in a partial section keep their defaults
        assert config.scoring.ofac['match_confidence'] == 0.85
        assert config.fanout.global_timeout_seconds == 20
        assert config.watcher.reconnect_backoff_seconds == 1
        assert config.watcher.alert_capacity == 500

    def test_source_override_keeps_base(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("""
sources:
  pep:
    enabled: false
  custom:
    base_url: https://example.org
""")
        config = ConfigManager(str(config_file))

        assert config.sources['pep'].enabled is False
        assert config.sources['pep'].base_url == "https://api.opensanctions.org"
        assert config.sources['custom'].base_url == "https://example.org"

    def test_database_url_from_environment(self, tmp_path, monkeypatch):
        """DATABASE_URL wins over the file"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("database:\n  url: sqlite:///file.db\n")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")

        config = ConfigManager(str(config_file))
        assert config.database.url == "sqlite:///env.db"

    def test_log_level_uppercased(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("logging:\n  level: debug\n")
        config = ConfigManager(str(config_file))
        assert config.logging.level == "DEBUG"

    def test_singleton(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("matching:\n  name_floor: 0.9\n")

        first = ConfigManager.get_instance(str(config_file))
        second = ConfigManager.get_instance()
        assert first is second
        assert second.matching.name_floor == 0.9


class TestValidation:
    """Invalid values are rejected at load time"""

    def _load(self, tmp_path, content):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(content)
        return ConfigManager(str(config_file))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            self._load(tmp_path, "matching: [unclosed\n")

    def test_name_floor_out_of_range(self, tmp_path):
        with pytest.raises(ConfigurationError, match="name_floor"):
            self._load(tmp_path, "matching:\n  name_floor: 1.5\n")

    def test_levels_must_descend(self, tmp_path):
        with pytest.raises(ConfigurationError, match="descending"):
            self._load(tmp_path, "scoring:\n  entity_levels: {CRITICAL: 50, HIGH: 80, MEDIUM: 25}\n")

    def test_levels_must_be_complete(self, tmp_path):
        with pytest.raises(ConfigurationError, match="missing levels"):
            self._load(tmp_path, "scoring:\n  wallet_levels: {CRITICAL: 80, HIGH: 50}\n")

    def test_source_timeout_positive(self, tmp_path):
        with pytest.raises(ConfigurationError, match="timeout"):
            self._load(tmp_path, "sources:\n  pep:\n    timeout: 0\n")

    def test_global_timeout_positive(self, tmp_path):
        with pytest.raises(ConfigurationError, match="global_timeout_seconds"):
            self._load(tmp_path, "fanout:\n  global_timeout_seconds: 0\n")

    def test_sdn_urls_required(self, tmp_path):
        with pytest.raises(ConfigurationError, match="sdn_urls"):
            self._load(tmp_path, "lists:\n  sdn_urls: []\n")

    def test_alert_capacity_positive(self, tmp_path):
        with pytest.raises(ConfigurationError, match="alert_capacity"):
            self._load(tmp_path, "watcher:\n  alert_capacity: 0\n")

    def test_unknown_log_level(self, tmp_path):
        with pytest.raises(ConfigurationError, match="logging.level"):
            self._load(tmp_path, "logging:\n  level: VERBOSE\n")


class TestApiKeys:
    """API keys come from the environment, never from the file"""

    def test_api_key_resolved_from_env(self, monkeypatch):
        monkeypatch.setenv("TEST_SOURCE_KEY", "secret")
        source = SourceConfig(api_key_env="TEST_SOURCE_KEY")
        assert source.api_key == "secret"

    def test_api_key_unset(self, monkeypatch):
        monkeypatch.delenv("TEST_SOURCE_KEY", raising=False)
        assert SourceConfig(api_key_env="TEST_SOURCE_KEY").api_key is None
        assert SourceConfig().api_key is None

    def test_to_dict_masks_keys(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OCCRP_API_KEY", "very-secret")
        config = ConfigManager(str(tmp_path / "missing.yaml"))

        exported = config.to_dict()
        assert exported['sources']['aleph']['api_key_configured'] is True
        assert "very-secret" not in str(exported)
