"""Tests for configuration helpers."""

from decimal import Decimal

import pytest

from ledger_ingest.config import EnvSettingsProvider, ImportConfig, Settings, parse_comma_list


def test_parse_comma_list_defaults() -> None:
    assert parse_comma_list(None, ["a"]) == ["a"]


def test_parse_comma_list_accepts_list() -> None:
    assert parse_comma_list(["x", "y"], ["a"]) == ["x", "y"]


def test_parse_comma_list_splits_string() -> None:
    assert parse_comma_list("x, y, ,z", ["a"]) == ["x", "y", "z"]


def test_cors_origins_from_env(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")

    assert Settings().cors_origins == ["https://a.example", "https://b.example"]


class TestEnvSettingsProvider:
    def test_reads_settings_attributes(self) -> None:
        source = Settings(max_concurrent_imports_per_user=7)

        provider = EnvSettingsProvider(source)

        assert provider.get("max_concurrent_imports_per_user") == 7
        assert provider.get("unknown_key", "fallback") == "fallback"

    def test_overrides_win(self) -> None:
        provider = EnvSettingsProvider(Settings(), overrides={"import_progress_interval": 2})

        assert provider.get("import_progress_interval") == 2


class TestImportConfig:
    def test_defaults_from_settings(self) -> None:
        config = ImportConfig.from_provider(EnvSettingsProvider(Settings()))

        assert config == ImportConfig()

    def test_from_provider_coerces_values(self) -> None:
        """GIVEN: Settings values stored as strings
        WHEN: Resolving an ImportConfig
        THEN: Each value is converted to the engine's type"""
        provider = EnvSettingsProvider(
            Settings(),
            overrides={
                "max_concurrent_imports_per_user": "2",
                "import_progress_interval": "0",
                "reconciliation_amount_tolerance": "0.05",
                "fuzzy_rule_similarity": "0.9",
            },
        )

        config = ImportConfig.from_provider(provider)

        assert config.max_concurrent_imports_per_user == 2
        assert config.progress_interval == 1
        assert config.amount_tolerance == Decimal("0.05")
        assert config.fuzzy_rule_similarity == pytest.approx(0.9)

    def test_is_immutable(self) -> None:
        config = ImportConfig()

        with pytest.raises(AttributeError):
            config.progress_interval = 3  # type: ignore[misc]
