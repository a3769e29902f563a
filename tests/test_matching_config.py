"""Tests for matching configuration loading."""

import pytest

from reconciler.config import settings
from reconciler.services.matching_config import DEFAULT_CONFIG, load_matching_config


def test_load_matching_config_reads_shipped_yaml() -> None:
    config = load_matching_config(force_reload=True)
    assert config.weight_amount == 0.45
    assert config.amount_tolerance_cents == 300
    assert "transfer" in config.transfer_keywords


def test_load_matching_config_is_cached() -> None:
    assert load_matching_config() is load_matching_config()


def test_load_matching_config_yaml_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    path = tmp_path / "matching.yaml"
    path.write_text(
        "pairing:\n"
        "  tolerances:\n"
        "    amount_cents: 50\n"
        "  min_score: 0.8\n"
        "  transfer_keywords: [Sweep]\n"
        "categorization:\n"
        "  min_confidence: 0.4\n"
    )
    monkeypatch.setattr(settings, "matching_config_path", path)

    config = load_matching_config(force_reload=True)

    assert config.amount_tolerance_cents == 50
    assert config.pairing_min_score == 0.8
    assert config.categorization_min_confidence == 0.4
    assert config.transfer_keywords == ("sweep",)
    assert config.weight_date == DEFAULT_CONFIG.weight_date


def test_load_matching_config_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PAIRING_MIN_SCORE", "0.75")
    monkeypatch.setenv("CATEGORIZATION_MIN_CONFIDENCE", "0.3")

    config = load_matching_config(force_reload=True)

    assert config.pairing_min_score == 0.75
    assert config.categorization_min_confidence == 0.3


def test_load_matching_config_malformed_yaml(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Malformed YAML falls back to defaults."""
    path = tmp_path / "matching.yaml"
    path.write_text("pairing: [unclosed")
    monkeypatch.setattr(settings, "matching_config_path", path)

    assert load_matching_config(force_reload=True) == DEFAULT_CONFIG


def test_load_matching_config_missing_file(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setattr(settings, "matching_config_path", tmp_path / "absent.yaml")
    assert load_matching_config(force_reload=True) == DEFAULT_CONFIG
