"""
Unit tests for BulkRNASeqService.

Tests marked ``slow`` share one GLM fitted with pydeseq2 per session.
"""

import numpy as np
import pandas as pd
import pytest

from bulkde.core import FormulaError
from bulkde.core.results_table import RESULT_COLUMNS
from bulkde.services.analysis.bulk_rnaseq_service import (
    BulkRNASeqService,
    PyDESeq2Error,
)
from tests.mock_data.factories import CONSTANT_GENE, FIXED_DE_GENE, ResultTableFactory

CONTRAST = ["condition", "treated", "control"]


@pytest.fixture
def service():
    return BulkRNASeqService()


@pytest.mark.unit
class TestInputValidation:
    """Checks that run before pydeseq2 is involved."""

    def test_negative_counts(self, service, count_dataset):
        counts = count_dataset.counts.copy()
        counts.iloc[0, 0] = -1

        with pytest.raises(PyDESeq2Error, match="negative"):
            service.fit_model(counts, count_dataset.metadata, "~condition", CONTRAST)

    def test_missing_samples(self, service, count_dataset):
        metadata = count_dataset.metadata.iloc[1:]

        with pytest.raises(PyDESeq2Error, match="missing from metadata"):
            service.fit_model(count_dataset.counts, metadata, "~condition", CONTRAST)

    def test_unknown_contrast_level(self, service, count_dataset):
        with pytest.raises(PyDESeq2Error, match="'mock'"):
            service.fit_model(
                count_dataset.counts,
                count_dataset.metadata,
                "~condition",
                ["condition", "mock", "control"],
            )

    def test_formula_errors_pass_through(self, service, count_dataset):
        with pytest.raises(FormulaError):
            service.fit_model(
                count_dataset.counts, count_dataset.metadata, "~genotype", None
            )

    def test_empty_counts(self, service, count_dataset):
        with pytest.raises(PyDESeq2Error, match="empty"):
            service.fit_model(pd.DataFrame(), count_dataset.metadata, "~condition")


@pytest.mark.unit
class TestSelectSignificant:
    def test_counts_and_labels(self, service):
        results = ResultTableFactory()

        labelled, significant, stats, ir = service.select_significant(results, 0.1, 1.0)

        assert len(labelled) == len(results)
        assert stats["n_significant"] == len(significant)
        assert stats["n_upregulated"] + stats["n_downregulated"] == len(significant)
        assert set(significant["regulation"]) <= {"up", "down"}
        assert ir.tool_name == "select_significant"
        assert ir.get_papermill_parameters() == {"padj_threshold": 0.1, "lfc_threshold": 1.0}

    def test_stricter_thresholds_select_subset(self, service):
        results = ResultTableFactory()

        _, loose, _, _ = service.select_significant(results, 0.1, 1.0)
        _, strict, _, _ = service.select_significant(results, 0.01, 2.0)

        assert set(strict.index) <= set(loose.index)


@pytest.mark.unit
@pytest.mark.slow
class TestFittedModel:
    """Model fitting and Wald testing on the simulated dataset."""

    def test_size_factors_positive(self, fitted_model):
        assert (fitted_model.size_factors > 0).all()
        assert len(fitted_model.size_factors) == 6

    def test_dispersions_cover_every_gene(self, fitted_model, count_dataset):
        assert list(fitted_model.dispersions.index) == list(count_dataset.counts.index)
        assert "dispersions" in fitted_model.dispersions.columns

    def test_reference_level_from_contrast(self, fitted_model):
        info = fitted_model.formula_components["variable_info"]["condition"]

        assert info["reference_level"] == "control"

    def test_wald_results(self, service, fitted_model):
        results, stats, ir = service.test_contrast(fitted_model, CONTRAST, alpha=0.1)

        assert list(results.columns) == RESULT_COLUMNS + ["contrast"]
        assert results.attrs["contrast"] == CONTRAST
        assert stats["n_genes_tested"] > 0
        tested = results.dropna(subset=["pvalue", "padj"])
        assert (tested["padj"] >= tested["pvalue"] - 1e-12).all()
        assert ir.tool_name == "test_contrast"

    def test_fixed_gene_is_upregulated(self, service, fitted_model):
        results, _, _ = service.test_contrast(fitted_model, CONTRAST)

        fixed = results.loc[FIXED_DE_GENE]
        assert fixed["log2FoldChange"] > 2
        assert fixed["padj"] < 0.1

    def test_constant_gene_is_not_significant(self, service, fitted_model):
        results, _, _ = service.test_contrast(fitted_model, CONTRAST)
        labelled, significant, _, _ = service.select_significant(results)

        assert CONSTANT_GENE not in significant.index
        assert abs(results.loc[CONSTANT_GENE, "log2FoldChange"]) < 1

    def test_reversed_contrast_flips_sign(self, service, fitted_model):
        forward, _, _ = service.test_contrast(fitted_model, CONTRAST)
        reverse, _, _ = service.test_contrast(
            fitted_model, ["condition", "control", "treated"]
        )

        np.testing.assert_allclose(
            forward.loc[FIXED_DE_GENE, "log2FoldChange"],
            -reverse.loc[FIXED_DE_GENE, "log2FoldChange"],
            rtol=1e-6,
        )

    def test_contrast_on_unknown_factor(self, service, fitted_model):
        with pytest.raises(PyDESeq2Error, match="not in the design"):
            service.test_contrast(fitted_model, ["batch", "b1", "b2"])

    def test_shrinkage_keeps_pvalues(self, service, fitted_model):
        unshrunk, _, _ = service.test_contrast(fitted_model, CONTRAST)

        shrunk, stats, ir = service.shrink_lfc(fitted_model, CONTRAST)

        assert stats["shrinkage_applied"]
        assert stats["coefficient"] == service.resolve_shrinkage_coefficient(
            fitted_model, CONTRAST
        )
        assert shrunk.attrs["shrunk"] is True
        pd.testing.assert_series_equal(shrunk["pvalue"], unshrunk["pvalue"])
        assert ir.tool_name == "shrink_lfc"

    def test_shrinkage_without_matching_coefficient(self, service, fitted_model):
        results, stats, ir = service.shrink_lfc(
            fitted_model, ["condition", "control", "treated"]
        )

        assert stats["shrinkage_applied"] is False
        assert ir is None
        assert results.attrs["shrunk"] is False

    def test_normalized_counts_shape(self, fitted_model, count_dataset):
        normalized = fitted_model.normalized_counts()

        assert normalized.shape == count_dataset.counts.shape
        assert (normalized.loc[CONSTANT_GENE] > 0).all()


@pytest.mark.slow
class TestRunDifferentialExpression:
    def test_fit_test_and_shrink_in_one_call(self, service, count_dataset):
        results, stats, ir = service.run_differential_expression(
            count_dataset.counts, count_dataset.metadata, "~condition", CONTRAST
        )

        assert ir.tool_name == "test_contrast"
        assert stats["fit_ir"].tool_name == "fit_model"
        assert stats["shrinkage_applied"] is True
        assert results.attrs["shrunk"] is True
        assert results.loc[FIXED_DE_GENE, "significant"]
        assert stats["n_significant"] == int(results["significant"].sum())

    def test_design_report_in_fit_stats(self, service, count_dataset):
        _, stats, _ = service.run_differential_expression(
            count_dataset.counts, count_dataset.metadata, "~condition", CONTRAST, shrink_lfc=False
        )

        assert stats["design_columns"] == ["(Intercept)", "condition[T.treated]"]
        assert stats["design_rank"] == 2
        assert stats["contrast_name"] == "condition_treated_vs_control"
        assert stats["design_summary"]["condition"] == {"control": 3, "treated": 3}
        assert stats["design_warnings"] == []
