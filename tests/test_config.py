# tests/test_config.py
"""
Tests for store and EWC configuration.
"""

import pytest

from pattern_nexus import EWCConfig, PatternStore, PatternStoreConfig, PatternValidationError


class TestEWCConfig:
    def test_defaults_are_valid(self):
        config = EWCConfig()
        assert config.validate() == []
        assert config.lambda_ == 5.0
        assert config.fisher_decay == 0.95
        assert config.importance_threshold == 0.01
        assert config.fisher_sample_size == 100
        assert config.consolidation_threshold == 0.1
        assert config.max_patterns == 10000
        assert config.min_consolidation_interval == 3600.0

    def test_validate_reports_every_problem(self):
        errors = EWCConfig(lambda_=-1, fisher_decay=0.0, max_patterns=0).validate()
        assert len(errors) == 3

    def test_from_dict_accepts_lambda(self):
        config = EWCConfig.from_dict({"lambda": 10.0, "fisher_decay": 0.9, "unknown": 1})
        assert config.lambda_ == 10.0
        assert config.fisher_decay == 0.9


class TestPatternStoreConfig:
    def test_defaults(self):
        config = PatternStoreConfig()
        assert config.validate() == []
        assert config.db_path is None
        assert config.dimensions == 384
        assert config.consolidation_mode == "sync"

    def test_invalid_mode(self):
        errors = PatternStoreConfig(consolidation_mode="lazy").validate()
        assert any("consolidation_mode" in e for e in errors)

    def test_nested_ewc_errors_are_prefixed(self):
        errors = PatternStoreConfig(ewc=EWCConfig(fisher_decay=2.0)).validate()
        assert errors == ["ewc.fisher_decay must be in (0, 1]"]

    def test_dict_round_trip_keeps_ewc(self):
        config = PatternStoreConfig(dimensions=64, ewc=EWCConfig(max_patterns=50))
        restored = PatternStoreConfig.from_dict(config.to_dict())
        assert restored == config

    def test_with_overrides(self):
        base = PatternStoreConfig()
        config = base.with_overrides(dimensions=128, ewc={"lambda": 2.0, "max_patterns": 500})

        assert config.dimensions == 128
        assert config.ewc.lambda_ == 2.0
        assert config.ewc.max_patterns == 500
        assert config.ewc.fisher_decay == 0.95
        assert base.dimensions == 384

    def test_with_overrides_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            PatternStoreConfig().with_overrides(dimension=128)

    def test_from_env(self, monkeypatch, tmp_path):
        db_path = str(tmp_path / "patterns.db")
        monkeypatch.setenv("PATTERN_NEXUS_DB_PATH", db_path)
        monkeypatch.setenv("PATTERN_NEXUS_DIMENSIONS", "128")
        monkeypatch.setenv("PATTERN_NEXUS_MAX_PATTERNS", "2000")
        monkeypatch.setenv("PATTERN_NEXUS_CONSOLIDATION_MODE", "deferred")

        config = PatternStoreConfig.from_env(auto_consolidate=False)

        assert config.db_path == db_path
        assert config.dimensions == 128
        assert config.ewc.max_patterns == 2000
        assert config.consolidation_mode == "deferred"
        assert config.auto_consolidate is False

    def test_from_env_defaults(self, monkeypatch):
        for name in (
            "PATTERN_NEXUS_DB_PATH",
            "PATTERN_NEXUS_EMBEDDINGS",
            "PATTERN_NEXUS_EMBEDDING_MODEL",
            "PATTERN_NEXUS_DIMENSIONS",
            "PATTERN_NEXUS_MAX_PATTERNS",
            "PATTERN_NEXUS_CONSOLIDATION_MODE",
        ):
            monkeypatch.delenv(name, raising=False)
        assert PatternStoreConfig.from_env() == PatternStoreConfig()

    def test_store_refuses_invalid_config(self):
        with pytest.raises(PatternValidationError):
            PatternStore(PatternStoreConfig(dimensions=64, consolidation_mode="lazy"))
