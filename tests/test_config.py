"""Unit tests for configuration loading."""

import pytest
import yaml
from pydantic import ValidationError

from rnaseq_dashboard import config as config_module
from rnaseq_dashboard.config import CONFIG_TEMPLATE, Config, get_config, set_config


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the home directory at a temp dir and reset the global config."""
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in ("RNASEQ_PORT", "RNASEQ_DEBUG", "RNASEQ_DEFAULTS__HEATMAP_TOP_N"):
        monkeypatch.delenv(name, raising=False)
    set_config(None)
    yield
    set_config(None)


class TestConfig:
    """Tests for Config."""

    def test_defaults(self):
        config = Config()

        assert config.defaults.design_factor == "condition"
        assert config.defaults.fit_type == "mean"
        assert config.defaults.pvalue_cutoff == 0.05
        assert config.defaults.log2fc_cutoff == 1.0
        assert config.defaults.heatmap_top_n == 50
        assert config.defaults.table_page_size == 10
        assert config.max_upload_bytes == 1024 ** 3
        assert config.port == 8050

    def test_yaml_round_trip(self, tmp_path):
        path = tmp_path / "config.yaml"
        config = Config(port=9000, debug=True)
        config.defaults.heatmap_top_n = 25

        config.to_yaml(path)
        loaded = Config.from_yaml(path)

        assert loaded.port == 9000
        assert loaded.debug is True
        assert loaded.defaults.heatmap_top_n == 25
        assert loaded.paths.user_home == config.paths.user_home

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert Config.from_yaml(path).port == 8050

    def test_template_is_loadable(self, tmp_path):
        data = yaml.safe_load(CONFIG_TEMPLATE)

        config = Config(**data)

        assert config.defaults.pca_top_n == 500
        assert config.max_upload_bytes == 1024 ** 3

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("RNASEQ_PORT", "8123")
        monkeypatch.setenv("RNASEQ_DEFAULTS__HEATMAP_TOP_N", "20")

        config = Config()

        assert config.port == 8123
        assert config.defaults.heatmap_top_n == 20

    @pytest.mark.parametrize("field, value", [
        ("fit_type", "linear"),
        ("pvalue_cutoff", 0.0),
        ("pvalue_cutoff", 1.5),
        ("heatmap_top_n", 0),
    ])
    def test_invalid_defaults(self, field, value):
        with pytest.raises(ValidationError):
            Config(defaults={field: value})

    def test_initialize_writes_config(self, tmp_path):
        config = Config(paths={"user_home": tmp_path / "home", "upload_dir": tmp_path / "uploads"})

        config.initialize()

        assert (tmp_path / "home" / "config.yaml").exists()
        assert (tmp_path / "uploads").is_dir()


class TestGlobalConfig:
    """Tests for the process-wide configuration."""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_get_config_reads_user_file(self):
        path = config_module.default_config_path()
        path.parent.mkdir(parents=True)
        path.write_text("port: 9100\n")

        assert get_config().port == 9100

    def test_set_config(self):
        custom = Config(app_title="Custom")

        set_config(custom)

        assert get_config() is custom
