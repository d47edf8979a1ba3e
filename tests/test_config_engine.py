"""Tests for backend profiles and the backends.json override file."""
import json
import os

import pytest

from config_engine import ConfigConstants, ConfigEngine, DEFAULT_PROFILES, GEMINI_PROFILE, PERPLEXITY_PROFILE


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "backends.json"


def write(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")


def test_builtin_profiles_without_file(config_file):
    engine = ConfigEngine(str(config_file))

    assert engine.list_backends() == ["perplexity", "gemini"]
    assert engine.get_profile("perplexity")["deadline"] == 120
    assert engine.get_profile("gemini")["high_threshold"] == 10
    assert engine.get_profile("nope") is None


def test_profile_is_a_snapshot(config_file):
    engine = ConfigEngine(str(config_file))

    profile = engine.get_profile("gemini")
    profile["input_selectors"].append("#mutated")

    assert "#mutated" not in GEMINI_PROFILE["input_selectors"]
    assert "#mutated" not in engine.get_profile("gemini")["input_selectors"]


def test_override_merges_per_key(config_file):
    write(config_file, {"gemini": {"deadline": 90, "busy_selectors": [".thinking"]}})
    engine = ConfigEngine(str(config_file))

    profile = engine.get_profile("gemini")

    assert profile["deadline"] == 90
    assert profile["busy_selectors"] == [".thinking"]
    assert profile["input_selectors"] == GEMINI_PROFILE["input_selectors"]


def test_invalid_override_values_fall_back(config_file):
    write(config_file, {"perplexity": {
        "deadline": "soon",
        "low_threshold": -1,
        "high_threshold": True,
        "input_selectors": ["textarea", "xpath://div", "@@bad", ""],
        "answer_regions": [{"selector": "main", "mode": "sideways"}],
    }})
    engine = ConfigEngine(str(config_file))

    profile = engine.get_profile("perplexity")

    assert profile["deadline"] == PERPLEXITY_PROFILE["deadline"]
    assert profile["low_threshold"] == PERPLEXITY_PROFILE["low_threshold"]
    assert profile["high_threshold"] == PERPLEXITY_PROFILE["high_threshold"]
    assert profile["input_selectors"] == ["textarea"]
    assert profile["answer_regions"] == PERPLEXITY_PROFILE["answer_regions"]


def test_override_only_backend(config_file):
    write(config_file, {"pplx-labs": {"url": "https://labs.perplexity.ai/", "deadline": 60}})
    engine = ConfigEngine(str(config_file))

    assert "pplx-labs" in engine.list_backends()
    profile = engine.get_profile("pplx-labs")
    assert profile["name"] == "pplx-labs"
    assert profile["url"] == "https://labs.perplexity.ai/"
    assert profile["answer_regions"] == DEFAULT_PROFILES["perplexity"]["answer_regions"]


def test_hot_reload_on_mtime_change(config_file):
    write(config_file, {"gemini": {"deadline": 90}})
    engine = ConfigEngine(str(config_file))
    assert engine.get_profile("gemini")["deadline"] == 90

    write(config_file, {"gemini": {"deadline": 45}})
    os.utime(config_file, (engine.last_mtime + 10, engine.last_mtime + 10))

    assert engine.get_profile("gemini")["deadline"] == 45


def test_broken_reload_keeps_previous_overrides(config_file):
    write(config_file, {"gemini": {"deadline": 90}})
    engine = ConfigEngine(str(config_file))

    config_file.write_text("{not json", encoding="utf-8")
    os.utime(config_file, (engine.last_mtime + 10, engine.last_mtime + 10))

    assert engine.get_profile("gemini")["deadline"] == 90


def test_deleted_file_restores_builtins(config_file):
    write(config_file, {"gemini": {"deadline": 90}})
    engine = ConfigEngine(str(config_file))

    config_file.unlink()

    assert engine.get_profile("gemini")["deadline"] == GEMINI_PROFILE["deadline"]


def test_non_object_file_is_ignored(config_file):
    write(config_file, ["gemini"])

    engine = ConfigEngine(str(config_file))

    assert engine.overrides == {}


def test_override_only_backend_starts_from_default_model(config_file, monkeypatch):
    monkeypatch.setattr(ConfigConstants, "DEFAULT_MODEL", "gemini")
    write(config_file, {"gemini-labs": {"url": "https://labs.google.com/"}})
    engine = ConfigEngine(str(config_file))

    profile = engine.get_profile("gemini-labs")

    assert profile["answer_regions"] == GEMINI_PROFILE["answer_regions"]
    assert profile["isolated_context"] is False


def test_override_only_backend_with_unknown_default_model(config_file, monkeypatch):
    monkeypatch.setattr(ConfigConstants, "DEFAULT_MODEL", "missing")
    write(config_file, {"other": {"url": "https://example.com/"}})
    engine = ConfigEngine(str(config_file))

    assert engine.get_profile("other")["answer_regions"] == PERPLEXITY_PROFILE["answer_regions"]


def test_context_isolation_per_backend(config_file):
    write(config_file, {"perplexity": {"isolated_context": "yes"}, "gemini": {"isolated_context": True}})
    engine = ConfigEngine(str(config_file))

    assert engine.get_profile("perplexity")["isolated_context"] is True
    assert engine.get_profile("gemini")["isolated_context"] is True
    assert GEMINI_PROFILE["isolated_context"] is False
