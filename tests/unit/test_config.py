"""Unit tests for pipeline configuration: struct bounds, YAML loading, env overrides."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from src.config.loader import load_config, load_pipeline_config
from src.config.pipeline_config import PipelineConfig, SegmentationOptions
from src.config.settings import Settings
from src.models.knowledge import SegmentationMethod
from src.utils.errors import ConfigurationError


def _write_yaml(tmp_path: Path, body: str) -> str:
    path = tmp_path / "pipeline.yaml"
    path.write_text(body, encoding="utf-8")
    return str(path)


# ─── SegmentationOptions ──────────────────────────────────────────────


class TestSegmentationOptions:
    def test_defaults(self) -> None:
        options = SegmentationOptions()
        assert options.method == SegmentationMethod.SEMANTIC
        assert (options.target_size, options.overlap) == (1000, 200)
        assert (options.min_fragment_size, options.max_fragment_size) == (100, 2000)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"target_size": 50},
            {"target_size": 2500},
            {"target_size": 300, "overlap": 300},
            {"min_fragment_size": 500, "max_fragment_size": 400, "target_size": 300},
            {"target_size": 1500, "max_fragment_size": 1200},
        ],
    )
    def test_inconsistent_bounds_are_rejected(self, kwargs: dict) -> None:
        with pytest.raises(ValidationError):
            SegmentationOptions(**kwargs)

    def test_frozen(self) -> None:
        options = SegmentationOptions()
        with pytest.raises(ValidationError):
            options.target_size = 500


# ─── YAML loading ─────────────────────────────────────────────────────


class TestLoadConfig:
    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert load_config(str(tmp_path / "absent.yaml")) == {}

    def test_broken_yaml_raises(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, "segmentation: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_repo_defaults_validate(self) -> None:
        raw = load_config(str(Path(__file__).parents[2] / "config" / "pipeline.yaml"))
        config = PipelineConfig.model_validate(raw)
        assert config.embedding.model == "text-embedding-3-small"
        assert config.ingestion.auto_load_priority == 8


# ─── Merged pipeline config ───────────────────────────────────────────


class TestLoadPipelineConfig:
    def test_yaml_values_win_over_unset_settings(self, tmp_path: Path) -> None:
        path = _write_yaml(
            tmp_path,
            "segmentation:\n  target_size: 1200\nembedding:\n  batch_size: 20\n",
        )

        config = load_pipeline_config(path, settings=Settings(_env_file=None))

        assert config.segmentation.target_size == 1200
        assert config.embedding.batch_size == 20
        assert config.retrieval.default_limit == 5

    def test_explicit_settings_override_yaml(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, "segmentation:\n  target_size: 1200\n")
        settings = Settings(_env_file=None, chunk_size=600, search_default_threshold=0.5)

        config = load_pipeline_config(path, settings=settings)

        assert config.segmentation.target_size == 600
        assert config.retrieval.default_threshold == 0.5

    def test_environment_variable_override(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("CHUNKING_METHOD", "sentence")
        monkeypatch.setenv("EMBEDDING_MAX_RETRIES", "5")
        path = _write_yaml(tmp_path, "segmentation:\n  method: semantic\n")

        config = load_pipeline_config(path, settings=Settings(_env_file=None))

        assert config.segmentation.method == SegmentationMethod.SENTENCE
        assert config.embedding.max_retries == 5

    def test_empty_model_setting_is_ignored(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, "embedding:\n  model: text-embedding-3-large\n")
        settings = Settings(_env_file=None, openai_embedding_model="")

        config = load_pipeline_config(path, settings=settings)

        assert config.embedding.model == "text-embedding-3-large"

    def test_invalid_merged_values_raise(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, "segmentation:\n  target_size: 400\n  overlap: 500\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_pipeline_config(path, settings=Settings(_env_file=None))
        assert exc_info.value.code == "CONFIGURATION_ERROR"
