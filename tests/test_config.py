import logging
from pathlib import Path

import pytest

from config import DEFAULT_DATA_DIR, load_config


def test_defaults():
    cfg = load_config({})
    assert cfg.data_dir == DEFAULT_DATA_DIR
    assert cfg.data_url is None
    assert cfg.debounce_ms == 200
    assert cfg.default_scope == "01"
    assert cfg.log_level == logging.INFO
    assert cfg.http_timeout == 30.0


def test_overrides(tmp_path):
    cfg = load_config({
        "ACCESSMAP_DATA_DIR": str(tmp_path),
        "ACCESSMAP_DATA_URL": "https://example.org/data",
        "ACCESSMAP_DEBOUNCE_MS": "50",
        "ACCESSMAP_DEFAULT_SCOPE": "all",
        "ACCESSMAP_LOG_LEVEL": "debug",
        "ACCESSMAP_HTTP_TIMEOUT": "5",
    })
    assert cfg.data_dir == Path(tmp_path)
    assert cfg.data_url == "https://example.org/data"
    assert cfg.debounce_ms == 50
    assert cfg.default_scope == "all"
    assert cfg.log_level == logging.DEBUG
    assert cfg.http_timeout == 5.0


@pytest.mark.parametrize(
    "key, value",
    [
        ("ACCESSMAP_DEBOUNCE_MS", "soon"),
        ("ACCESSMAP_DEBOUNCE_MS", "-1"),
        ("ACCESSMAP_HTTP_TIMEOUT", "0"),
        ("ACCESSMAP_LOG_LEVEL", "chatty"),
    ],
)
def test_invalid_values(key, value):
    with pytest.raises(ValueError, match=key):
        load_config({key: value})
