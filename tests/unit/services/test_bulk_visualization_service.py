"""
Unit tests for BulkVisualizationService.
"""

from types import SimpleNamespace

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import pytest

from bulkde.services.visualization.bulk_visualization_service import (
    BulkVisualizationError,
    BulkVisualizationService,
)
from tests.mock_data.factories import gene_ids


@pytest.fixture
def service():
    return BulkVisualizationService()


@pytest.fixture
def metadata():
    return pd.DataFrame(
        {"condition": ["control"] * 3 + ["treated"] * 3},
        index=[f"S0{i}" for i in range(1, 7)],
    )


@pytest.fixture
def vst(metadata):
    rng = np.random.default_rng(5)
    return pd.DataFrame(
        rng.normal(8, 1, (30, 6)), index=gene_ids(30), columns=metadata.index
    )


@pytest.mark.unit
class TestResultPlots:
    """Volcano and MA plots from a result table."""

    def test_volcano_counts(self, service, result_table):
        fig, stats, ir = service.create_volcano_plot(result_table, 0.1, 1.0, top_n_genes=5)

        significant = (result_table["padj"] < 0.1) & (result_table["log2FoldChange"].abs() > 1)
        assert isinstance(fig, go.Figure)
        assert stats["plot_type"] == "volcano_plot"
        assert stats["n_genes_up"] + stats["n_genes_down"] == int(significant.sum())
        assert stats["n_genes_not_significant"] == len(result_table) - int(significant.sum())
        assert stats["top_n_genes_labeled"] == 5
        assert len(fig.layout.annotations) == 5
        assert ir.tool_name == "create_volcano_plot"

    def test_volcano_labels_use_symbols(self, service, result_table):
        fig, _, _ = service.create_volcano_plot(result_table, top_n_genes=3, label_column="symbol")

        assert all(a.text.startswith("GENE") for a in fig.layout.annotations)

    def test_volcano_without_significant_genes(self, service, result_table):
        fig, stats, _ = service.create_volcano_plot(result_table, lfc_threshold=50)

        assert stats["n_genes_up"] == stats["n_genes_down"] == 0
        assert stats["top_n_genes_labeled"] == 0

    def test_volcano_missing_column(self, service):
        with pytest.raises(BulkVisualizationError, match="Missing required columns"):
            service.create_volcano_plot(pd.DataFrame({"pvalue": [0.1]}))

    def test_ma_plot(self, service, result_table):
        fig, stats, _ = service.create_ma_plot(result_table, padj_threshold=0.1)

        assert stats["plot_type"] == "ma_plot"
        assert stats["n_genes_significant"] == int((result_table["padj"] < 0.1).sum())
        assert fig.layout.xaxis.type == "log"


@pytest.mark.unit
class TestSamplePlots:
    def test_pca_plot(self, service, metadata):
        coordinates = pd.DataFrame(
            {"PC1": np.arange(6.0), "PC2": np.arange(6.0)[::-1]}, index=metadata.index
        ).join(metadata)

        fig, stats, _ = service.create_pca_plot(
            {"coordinates": coordinates, "variance_explained": [60.0, 25.0]},
            color_by="condition",
        )

        assert stats["n_samples"] == 6
        assert stats["variance_explained"] == [60.0, 25.0]
        assert "60.0%" in fig.layout.xaxis.title.text

    def test_pca_unknown_column(self, service, metadata):
        coordinates = pd.DataFrame({"PC1": np.arange(6.0)}, index=metadata.index)

        with pytest.raises(BulkVisualizationError, match="not in sample metadata"):
            service.create_pca_plot(
                {"coordinates": coordinates, "variance_explained": [100.0]}, color_by="batch"
            )

    def test_expression_heatmap_top_variance(self, service, vst, metadata):
        fig, stats, ir = service.create_expression_heatmap(
            vst, metadata=metadata, n_top=10, annotate_by="condition"
        )

        assert stats["n_genes"] == 10
        assert stats["n_samples"] == 6
        assert all("(" in label for label in fig.data[0].x)
        ir.validate_rendered_code()

    def test_expression_heatmap_is_z_scored(self, service, vst):
        fig, _, _ = service.create_expression_heatmap(vst, genes=gene_ids(5), cluster_genes=False)

        z = np.asarray(fig.data[0].z)
        np.testing.assert_allclose(z.mean(axis=1), 0, atol=1e-9)

    def test_expression_heatmap_gene_labels(self, service, vst):
        labels = pd.Series({gene_ids(1)[0]: "TP53"})

        fig, _, _ = service.create_expression_heatmap(
            vst, genes=gene_ids(2), gene_labels=labels, cluster_genes=False
        )

        assert list(fig.data[0].y) == ["TP53", gene_ids(2)[1]]

    def test_expression_heatmap_unknown_genes(self, service, vst):
        with pytest.raises(BulkVisualizationError, match="No valid genes"):
            service.create_expression_heatmap(vst, genes=["ENSG_MISSING"])

    def test_sample_distance_heatmap(self, service, vst):
        from scipy.spatial.distance import pdist, squareform

        distances = pd.DataFrame(
            squareform(pdist(vst.T.to_numpy())), index=vst.columns, columns=vst.columns
        )

        fig, stats, _ = service.create_sample_distance_heatmap(distances)

        assert stats["n_samples"] == 6
        assert stats["max_distance"] == pytest.approx(distances.to_numpy().max())
        assert sorted(fig.data[0].x) == sorted(vst.columns)

    def test_gene_counts_plot(self, service, vst, metadata):
        normalized = vst.apply(np.exp2)

        fig, stats, _ = service.create_gene_counts_plot(
            normalized, metadata, gene_ids(1)[0], "condition"
        )

        assert set(stats["group_means"]) == {"control", "treated"}
        assert fig.layout.yaxis.type == "log"

    def test_gene_counts_unknown_gene(self, service, vst, metadata):
        with pytest.raises(BulkVisualizationError, match="not in normalized counts"):
            service.create_gene_counts_plot(vst, metadata, "ENSG_MISSING", "condition")

    def test_gene_counts_unknown_group(self, service, vst, metadata):
        with pytest.raises(BulkVisualizationError, match="not in sample metadata"):
            service.create_gene_counts_plot(vst, metadata, gene_ids(1)[0], "batch")


@pytest.mark.unit
class TestDispersionPlot:
    def test_dispersion_plot(self, service):
        rng = np.random.default_rng(2)
        base_mean = rng.lognormal(4, 1.5, 100)
        dispersions = pd.DataFrame(
            {
                "baseMean": base_mean,
                "genewise_dispersions": 0.1 + 1 / base_mean,
                "fitted_dispersions": 0.1 + 1 / base_mean,
                "MAP_dispersions": 0.1 + 0.9 / base_mean,
                "dispersions": 0.1 + 0.9 / base_mean,
            },
            index=gene_ids(100),
        )
        dispersions.iloc[:5] = np.nan
        model = SimpleNamespace(dispersions=dispersions)

        fig, stats, _ = service.create_dispersion_plot(model)

        assert stats["n_genes"] == 95
        assert stats["final_estimate"] == "MAP_dispersions"
        assert fig.layout.xaxis.type == "log"

    def test_no_estimates(self, service):
        dispersions = pd.DataFrame(
            {c: [np.nan] for c in ["baseMean", "genewise_dispersions", "fitted_dispersions", "MAP_dispersions", "dispersions"]}
        )

        with pytest.raises(BulkVisualizationError, match="No dispersion estimates"):
            service.create_dispersion_plot(SimpleNamespace(dispersions=dispersions))
