"""
Unit tests for TransformationService.
"""

import numpy as np
import pandas as pd
import pytest

from bulkde.services.analysis.transformation_service import (
    TransformationError,
    TransformationService,
)


@pytest.fixture
def service():
    return TransformationService()


@pytest.fixture
def metadata():
    return pd.DataFrame(
        {
            "condition": ["control"] * 3 + ["treated"] * 3,
            "batch": ["b1", "b2", "b1", "b2", "b1", "b2"],
        },
        index=[f"S{i}" for i in range(1, 7)],
    )


@pytest.fixture
def log_values(metadata):
    """Noise-free log values: gene baseline + condition effect + batch shift."""
    rng = np.random.default_rng(3)
    n_genes = 40
    baseline = rng.normal(8, 2, n_genes)[:, None]
    condition_effect = rng.normal(0, 1, n_genes)[:, None]
    batch_shift = rng.normal(0, 1.5, n_genes)[:, None]

    treated = (metadata["condition"] == "treated").to_numpy(dtype=float)[None, :]
    second_batch = (metadata["batch"] == "b2").to_numpy(dtype=float)[None, :]
    values = baseline + condition_effect * treated + batch_shift * second_batch
    return pd.DataFrame(
        values, index=[f"G{i}" for i in range(n_genes)], columns=metadata.index
    )


@pytest.mark.unit
class TestRemoveBatchEffect:
    """limma-style removal of additive batch effects."""

    def test_batch_shift_is_removed(self, service, log_values, metadata):
        corrected, stats, ir = service.remove_batch_effect(
            log_values, metadata, "batch", design="~condition"
        )

        np.testing.assert_allclose(corrected["S1"], corrected["S2"], atol=1e-8)
        np.testing.assert_allclose(corrected["S4"], corrected["S5"], atol=1e-8)
        assert stats["n_batches"] == 2
        assert ir.tool_name == "remove_batch_effect"

    def test_condition_effect_is_preserved(self, service, log_values, metadata):
        corrected, _, _ = service.remove_batch_effect(
            log_values, metadata, "batch", design="~condition"
        )

        np.testing.assert_allclose(
            corrected["S4"] - corrected["S1"], log_values["S4"] - log_values["S2"], atol=1e-8
        )

    def test_gene_means_are_kept(self, service, log_values, metadata):
        corrected, _, _ = service.remove_batch_effect(
            log_values, metadata, "batch", design="~condition"
        )

        np.testing.assert_allclose(corrected.mean(axis=1), log_values.mean(axis=1), atol=1e-8)

    def test_input_is_not_modified(self, service, log_values, metadata):
        before = log_values.copy()
        service.remove_batch_effect(log_values, metadata, "batch")

        pd.testing.assert_frame_equal(log_values, before)

    def test_single_batch_is_a_no_op(self, service, log_values, metadata):
        metadata["batch"] = "b1"

        corrected, stats, _ = service.remove_batch_effect(log_values, metadata, "batch")

        pd.testing.assert_frame_equal(corrected, log_values)
        assert stats == {"n_batches": 1}

    def test_missing_batch_column(self, service, log_values, metadata):
        with pytest.raises(TransformationError, match="not found"):
            service.remove_batch_effect(log_values, metadata, "lane")

    def test_batch_in_preserved_design(self, service, log_values, metadata):
        with pytest.raises(TransformationError, match="preserved design"):
            service.remove_batch_effect(
                log_values, metadata, "batch", design="~batch + condition"
            )

    def test_confounded_batch(self, service, log_values, metadata):
        metadata["batch"] = metadata["condition"].map({"control": "b1", "treated": "b2"})

        with pytest.raises(TransformationError, match="confounded"):
            service.remove_batch_effect(log_values, metadata, "batch", design="~condition")


@pytest.mark.unit
class TestPCA:
    def test_variance_explained(self, service, log_values, metadata):
        result, stats, ir = service.compute_pca(log_values, metadata, n_top=20, n_components=3)

        variance = result["variance_explained"]
        assert len(variance) == 3
        assert all(0 <= v <= 100 for v in variance)
        assert variance == sorted(variance, reverse=True)
        assert sum(variance) <= 100 + 1e-9
        assert result["genes_used"] == service.top_variable_genes(log_values, 20)
        assert stats["n_top"] == 20
        assert ir.tool_name == "compute_pca"

    def test_coordinates_joined_with_metadata(self, service, log_values, metadata):
        result, _, _ = service.compute_pca(log_values, metadata)

        coordinates = result["coordinates"]
        assert list(coordinates.index) == list(metadata.index)
        assert {"PC1", "PC2", "condition", "batch"} <= set(coordinates.columns)

    def test_components_capped_by_samples(self, service, log_values, metadata):
        _, stats, _ = service.compute_pca(log_values, metadata, n_components=10)

        assert stats["n_components"] == 6


@pytest.mark.unit
class TestDistances:
    def test_sample_distances_symmetric(self, service, log_values):
        distances = service.sample_distances(log_values)

        assert distances.shape == (6, 6)
        np.testing.assert_allclose(distances.to_numpy(), distances.to_numpy().T)
        assert (np.diag(distances) == 0).all()

    def test_top_variable_genes(self, service, log_values):
        top = service.top_variable_genes(log_values, 5)
        variances = log_values.var(axis=1)

        assert len(top) == 5
        assert variances[top].min() >= variances.drop(top).max()


@pytest.mark.unit
@pytest.mark.slow
class TestVarianceStabilization:
    def test_vst_on_fitted_model(self, service, fitted_model):
        values, stats, ir = service.variance_stabilize(fitted_model, blind=True)

        assert values.shape[1] == 6
        assert stats["n_genes"] == values.shape[0]
        assert np.isfinite(values.to_numpy()).all()
        assert ir.render().startswith("dds.vst(use_design=False)")
