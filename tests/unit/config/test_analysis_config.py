"""
Unit tests for AnalysisConfig validation and persistence.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from bulkde.config.analysis_config import (
    CONFIG_FILE_NAME,
    AnalysisConfig,
    AnnotationConfig,
    DesignConfig,
    EnrichmentConfig,
    ThresholdConfig,
)


def _config_dict(**overrides):
    data = {
        "input": {"counts_path": "counts.csv", "metadata_path": "metadata.csv"},
        "design": {"design": "~batch + condition", "contrast": ["condition", "treated", "control"]},
    }
    data.update(overrides)
    return data


@pytest.mark.unit
class TestThresholdConfig:
    def test_defaults(self):
        thresholds = ThresholdConfig()

        assert thresholds.padj == 0.1
        assert thresholds.lfc == 1.0

    @pytest.mark.parametrize("padj", [0.0, -0.1, 1.5])
    def test_padj_out_of_range(self, padj):
        with pytest.raises(ValidationError, match="padj threshold"):
            ThresholdConfig(padj=padj)

    def test_padj_of_one_is_allowed(self):
        assert ThresholdConfig(padj=1.0).padj == 1.0

    def test_negative_lfc(self):
        with pytest.raises(ValidationError, match="non-negative"):
            ThresholdConfig(lfc=-0.5)


@pytest.mark.unit
class TestDesignConfig:
    """Formula and contrast validation."""

    def test_formula_without_tilde(self):
        with pytest.raises(ValidationError, match="Invalid design formula"):
            DesignConfig(design="condition", contrast=["condition", "a", "b"])

    def test_contrast_length(self):
        with pytest.raises(ValidationError, match="factor, test_level, reference_level"):
            DesignConfig(contrast=["condition", "treated"])

    def test_identical_levels(self):
        with pytest.raises(ValidationError, match="must differ"):
            DesignConfig(contrast=["condition", "treated", "treated"])

    def test_contrast_factor_must_be_in_design(self):
        with pytest.raises(ValidationError, match="not part of design"):
            DesignConfig(design="~batch", contrast=["condition", "treated", "control"])

    def test_design_is_stripped(self):
        design = DesignConfig(design="  ~condition ", contrast=["condition", "t", "c"])

        assert design.design == "~condition"


@pytest.mark.unit
class TestSectionValidation:
    def test_organism_is_normalized(self):
        assert AnnotationConfig(organism="Mouse").organism == "mouse"

    def test_unknown_organism(self):
        with pytest.raises(ValidationError, match="Invalid organism"):
            AnnotationConfig(organism="zebrafish")

    def test_collections_are_upper_cased(self):
        assert EnrichmentConfig(collections=["go", "kegg"]).collections == ["GO", "KEGG"]

    def test_unknown_collection(self):
        with pytest.raises(ValidationError, match="Unknown collections"):
            EnrichmentConfig(collections=["REACTOME"])

    def test_size_bounds(self):
        with pytest.raises(ValidationError, match="min_size"):
            EnrichmentConfig(min_size=600, max_size=500)

    def test_invalid_mode(self):
        with pytest.raises(ValidationError):
            EnrichmentConfig(mode="fisher")


@pytest.mark.unit
class TestAnalysisConfigPersistence:
    """Saving and loading JSON configuration files."""

    def test_defaults_from_minimal_dict(self):
        config = AnalysisConfig.model_validate(_config_dict())

        assert config.thresholds.padj == 0.1
        assert config.enrichment.mode == "both"
        assert config.annotation.organism == "human"
        assert config.input.min_count == 10
        assert config.input.min_samples is None

    def test_save_and_load(self, temp_workspace):
        config = AnalysisConfig.model_validate(_config_dict(thresholds={"padj": 0.05, "lfc": 0.5}))

        path = config.save(temp_workspace / "run.json")
        loaded = AnalysisConfig.load(path)

        assert loaded == config
        assert loaded.input.counts_path == Path("counts.csv")

    def test_directory_paths_use_default_name(self, temp_workspace):
        AnalysisConfig.template().save(temp_workspace)

        assert (temp_workspace / CONFIG_FILE_NAME).exists()
        assert AnalysisConfig.load(temp_workspace).design.contrast[0] == "condition"

    def test_malformed_json(self, temp_workspace):
        path = temp_workspace / "bad.json"
        path.write_text("{not json")

        with pytest.raises(ValueError, match="not valid JSON"):
            AnalysisConfig.load(path)

    def test_invalid_values_raise_value_error(self, temp_workspace):
        path = temp_workspace / "invalid.json"
        path.write_text('{"input": {"counts_path": "c.csv", "metadata_path": "m.csv"}}')

        with pytest.raises(ValueError, match="Invalid config"):
            AnalysisConfig.load(path)

    def test_missing_file(self, temp_workspace):
        with pytest.raises(FileNotFoundError):
            AnalysisConfig.load(temp_workspace / "absent.json")
