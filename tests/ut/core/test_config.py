"""Config 单元测试"""

from __future__ import annotations

import pytest

from cellar.core.config import Config, get_config, init_config
from cellar.core.exceptions import ConfigError


class TestConfig:
    def test_defaults(self) -> None:
        cfg = Config()
        assert cfg.fetch_concurrency == 1
        assert cfg.build_from_source == []

    def test_invalid_values(self) -> None:
        with pytest.raises(ConfigError):
            Config(fetch_concurrency=0)
        with pytest.raises(ConfigError):
            Config(fetch_retries=-1)

    def test_from_file_with_extra(self, tmp_path) -> None:
        path = tmp_path / "cellar.yml"
        path.write_text(
            "prefix: /tmp/p\nfetch_concurrency: 4\nforbidden_licenses: [GPL-3.0]\nbuild_timeout: 30\n",
            encoding="utf-8",
        )
        cfg = Config.from_file(str(path))
        assert cfg.prefix == "/tmp/p"
        assert cfg.fetch_concurrency == 4
        assert cfg.forbidden_licenses == ["GPL-3.0"]
        assert cfg.extra == {"build_timeout": 30}

    def test_from_missing_file(self, tmp_path) -> None:
        assert Config.from_file(str(tmp_path / "none.yml")) == Config()

    def test_apply_env(self) -> None:
        cfg = Config().apply_env({
            "CELLAR_FORCE": "yes",
            "CELLAR_FETCH_RETRIES": "5",
            "CELLAR_BUILD_FROM_SOURCE": "a b",
            "CELLAR_FETCH_TIMEOUT": "2.5",
            "CELLAR_PREFIX": "/x",
        })
        assert cfg.force is True
        assert cfg.fetch_retries == 5
        assert cfg.build_from_source == ["a", "b"]
        assert cfg.fetch_timeout == 2.5
        assert cfg.prefix == "/x"

    def test_apply_env_bad_int(self) -> None:
        with pytest.raises(ConfigError, match="CELLAR_FETCH_RETRIES"):
            Config().apply_env({"CELLAR_FETCH_RETRIES": "many"})

    def test_apply_env_revalidates(self) -> None:
        with pytest.raises(ConfigError):
            Config().apply_env({"CELLAR_FETCH_CONCURRENCY": "0"})

    def test_init_config_sets_global(self, tmp_path) -> None:
        path = tmp_path / "cellar.yml"
        path.write_text("prefix: /opt/other\n", encoding="utf-8")
        cfg = init_config(str(path), use_env=False)
        assert get_config() is cfg
        assert cfg.prefix == "/opt/other"
