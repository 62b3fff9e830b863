import pytest

from src.common.config import (
    ConfigError,
    DEFAULT_MAX_NEIGHBORS,
    DEFAULT_SIMILARITY_THRESHOLD,
    clamp,
    load_keyword_dedupe_settings,
    validate_keyword_dedupe_settings,
)
from src.common.env import find_project_root, load_env
from tests.fakes import make_settings

_DEDUPE_ENV = [
    "KEYWORD_DEDUPE_THRESHOLD",
    "KEYWORD_DEDUPE_MAX_KEYWORDS",
    "KEYWORD_DEDUPE_MAX_NEIGHBORS",
    "KEYWORD_DEDUPE_MAX_CLUSTER_SIZE",
    "KEYWORD_DEDUPE_EMBED_CONCURRENCY",
    "KEYWORD_DEDUPE_MERGE_CONCURRENCY",
    "KEYWORD_DEDUPE_NAME_ONLY",
    "KEYWORD_DEDUPE_DELETE_SECONDARIES",
    "KEYWORD_DEDUPE_AGGRESSIVE",
    "KEYWORD_DEDUPE_EMBED_TIMEOUT_SEC",
    "KEYWORD_DEDUPE_DECISION_TIMEOUT_SEC",
    "KEYWORD_COLLECTION",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _DEDUPE_ENV:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = load_keyword_dedupe_settings()

    assert settings.similarity_threshold == DEFAULT_SIMILARITY_THRESHOLD
    assert settings.max_neighbors == DEFAULT_MAX_NEIGHBORS
    assert settings.max_keywords == 4000
    assert settings.max_cluster_size == 0
    assert settings.embed_concurrency == 30
    assert settings.merge_concurrency == 60
    assert settings.delete_secondaries is True
    assert settings.aggressive is False
    assert settings.keyword_collection == "keywords"


def test_values_are_clamped(clean_env):
    clean_env.setenv("KEYWORD_DEDUPE_THRESHOLD", "1.5")
    clean_env.setenv("KEYWORD_DEDUPE_MAX_KEYWORDS", "5")
    clean_env.setenv("KEYWORD_DEDUPE_MAX_CLUSTER_SIZE", "1000")
    clean_env.setenv("KEYWORD_DEDUPE_EMBED_CONCURRENCY", "500")
    clean_env.setenv("KEYWORD_DEDUPE_MERGE_CONCURRENCY", "0")

    settings = load_keyword_dedupe_settings()

    assert settings.similarity_threshold == 0.999
    assert settings.max_keywords == 10
    assert settings.max_cluster_size == 200
    assert settings.embed_concurrency == 64
    assert settings.merge_concurrency == 1


def test_invalid_threshold_raises(clean_env):
    clean_env.setenv("KEYWORD_DEDUPE_THRESHOLD", "high")
    with pytest.raises(ConfigError):
        load_keyword_dedupe_settings()


def test_invalid_bool_raises(clean_env):
    clean_env.setenv("KEYWORD_DEDUPE_AGGRESSIVE", "sometimes")
    with pytest.raises(ConfigError):
        load_keyword_dedupe_settings()


def test_aggressive_requires_delete(clean_env):
    clean_env.setenv("KEYWORD_DEDUPE_AGGRESSIVE", "true")
    clean_env.setenv("KEYWORD_DEDUPE_DELETE_SECONDARIES", "false")
    with pytest.raises(ConfigError):
        load_keyword_dedupe_settings()


@pytest.mark.parametrize(
    "overrides",
    [
        {"similarity_threshold": float("nan")},
        {"max_neighbors": -1},
        {"max_cluster_size": -3},
        {"embed_timeout_sec": 0},
        {"keyword_collection": " "},
    ],
)
def test_validate_rejects_invalid_settings(overrides):
    with pytest.raises(ConfigError):
        validate_keyword_dedupe_settings(make_settings(**overrides))


def test_clamp_non_finite_collapses_to_minimum():
    assert clamp(float("inf"), 0.05, 0.999) == 0.05
    assert clamp(0.5, 0.05, 0.999) == 0.5


def test_load_env_reads_dotenv_file(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("KEYWORD_DEDUPE_THRESHOLD=0.82\n")
    clean_env.setenv("KEYWORD_DEDUPE_THRESHOLD", "0.5")

    assert load_env(str(env_file)) is True
    assert load_keyword_dedupe_settings().similarity_threshold == 0.5

    assert load_env(str(env_file), override=True) is True
    assert load_keyword_dedupe_settings().similarity_threshold == 0.82


def test_load_env_missing_file(tmp_path):
    assert load_env(str(tmp_path / "absent.env")) is False


def test_find_project_root(tmp_path):
    (tmp_path / "pyproject.toml").write_text("")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_project_root(nested) == tmp_path
