import os
from pathlib import Path

import pytest

from access_token import AuthFailurePolicy
from candidate_sources import ContentRating
from config_loader import ConfigLoader, load_config
from filters import AspectRatioMode, FilterCriteria

CONFIG = """
source:
  mode: weekly
  extensions: [png, .jpg]
  network_bypass: true
filters:
  allow_manga: true
  allowed_ratings: [safe, suggestive]
  aspect_ratio: landscape
  min_views: 2
storage:
  download_dir: /data/artwork
  auto_crop: true
auth:
  refresh_token: ${TEST_REFRESH_TOKEN}
  failure_policy: serve_one_ranking
run:
  count: 4
"""


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(os.environ):
        if key.startswith(ConfigLoader.ENV_PREFIX):
            monkeypatch.delenv(key)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)
    return path


def test_defaults_without_file(tmp_path):
    config = ConfigLoader(tmp_path / "missing.yaml")

    assert config.get_filter_criteria() == FilterCriteria()
    assert config.get_run_config().count == 2
    assert config.get_source_config().mode == "daily"
    assert not config.get_source_config().network_bypass
    assert config.get_auth_config().failure_policy is AuthFailurePolicy.CHANGE_TO_RANKING


def test_typed_sections(config_file, monkeypatch):
    monkeypatch.setenv("TEST_REFRESH_TOKEN", "secret-refresh")
    config = ConfigLoader(config_file)

    criteria = config.get_filter_criteria()
    assert criteria.allow_manga
    assert criteria.allowed_ratings == {ContentRating.SAFE, ContentRating.SUGGESTIVE}
    assert criteria.aspect_ratio_mode is AspectRatioMode.LANDSCAPE
    assert criteria.min_views == 2

    source = config.get_source_config()
    assert source.mode == "weekly"
    assert source.extensions == (".png", ".jpg")
    assert source.network_bypass

    storage = config.get_storage_config()
    assert storage.download_dir == Path("/data/artwork")
    assert storage.auto_crop

    auth = config.get_auth_config()
    assert auth.refresh_token == "secret-refresh"
    assert auth.failure_policy is AuthFailurePolicy.SERVE_ONE_RANKING
    assert config.get_run_config().count == 4


def test_environment_overrides(config_file, monkeypatch):
    monkeypatch.setenv("CURATOR_RUN_COUNT", "7")
    monkeypatch.setenv("CURATOR_SOURCE_PAGE_CAP", "3")
    monkeypatch.setenv("CURATOR_SOURCE_NETWORK_BYPASS", "false")
    monkeypatch.setenv("CURATOR_FILTERS_ALLOWED_RATINGS", "safe,explicit")

    config = ConfigLoader(config_file)

    assert config.get_run_config().count == 7
    assert config.get_source_config().page_cap == 3
    assert not config.get_source_config().network_bypass
    assert config.get("filters.allowed_ratings") == ["safe", "explicit"]
    assert config.get_filter_criteria().allowed_ratings == {ContentRating.SAFE, ContentRating.EXPLICIT}


def test_unknown_rating_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("filters:\n  allowed_ratings: [spicy]\n")

    with pytest.raises(ValueError):
        ConfigLoader(path).get_filter_criteria()


def test_dot_path_get(config_file):
    config = ConfigLoader(config_file)

    assert config.get("source.mode") == "weekly"
    assert config.get("source.missing", "fallback") == "fallback"


def test_load_config_reads_given_path(config_file):
    config = load_config(config_file)

    assert config.config_path == config_file
    assert config.get_source_config().mode == "weekly"
