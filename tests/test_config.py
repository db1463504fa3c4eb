"""
Configuration Tests
===================
"""

import pytest
from pydantic import ValidationError

from config import Settings, load_config


class TestSettings:
    """Defaults, YAML loading and environment overrides."""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for var in ("SPLAG_DATA_DIR", "SPLAG_LOG_LEVEL", "SPLAG_LAG_METHOD"):
            monkeypatch.delenv(var, raising=False)

        settings = load_config()

        assert settings.crs == "EPSG:4326"
        assert settings.aggregation.boundary == "first"
        assert settings.weights.zero_policy is True
        assert settings.model.predictors == ["bus_stops", "trips"]
        assert settings.lag.max_iter == 500

    def test_yaml_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SPLAG_LAG_METHOD", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text(
            "lag:\n"
            "  method: trace\n"
            "  max_iter: 50\n"
            "moran:\n"
            "  assumption: normality\n"
        )

        settings = load_config(str(path))

        assert settings.lag.method == "trace"
        assert settings.lag.max_iter == 50
        assert settings.moran.assumption == "normality"
        assert settings.model.response == "total"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("incidents:\n  directory: from_file\n")
        monkeypatch.setenv("SPLAG_DATA_DIR", "from_env")

        assert load_config(str(path)).incidents.directory == "from_env"

    def test_missing_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SPLAG_DATA_DIR", raising=False)
        settings = load_config(str(tmp_path / "absent.yaml"))
        assert settings.incidents.directory == "data/crime"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"aggregation": {"boundary": "nearest"}})
        with pytest.raises(ValidationError):
            Settings.model_validate({"lag": {"max_iter": 0}})
        with pytest.raises(ValidationError):
            Settings.model_validate({"model": {"alpha": 1.5}})
