"""
Unit tests for EnrichmentVisualizationService.
"""

import pandas as pd
import pytest

from bulkde.services.analysis.enrichment_service import rank_genes
from bulkde.services.visualization.bulk_visualization_service import BulkVisualizationError
from bulkde.services.visualization.enrichment_visualization_service import (
    EnrichmentVisualizationService,
)


@pytest.fixture
def service():
    return EnrichmentVisualizationService()


@pytest.fixture
def enrichment():
    rows = []
    for i in range(8):
        rows.append(
            {
                "collection": "GO",
                "term": f"ORA term {i}",
                "enrichment_score": 2.0 + i,
                "pvalue": 10 ** -(8 - i),
                "padj": 10 ** -(7 - i),
                "core_genes": "GENE1;GENE3",
                "set_size": 20,
                "overlap": 2 + i,
                "mode": "ora",
            }
        )
    for i in range(4):
        rows.append(
            {
                "collection": "KEGG",
                "term": f"GSEA term {i}",
                "enrichment_score": 1.5 - i,
                "pvalue": 0.001 * (i + 1),
                "padj": 0.01 * (i + 1),
                "core_genes": "GENE1;GENE2;GENE4" if i < 3 else "NOT_RANKED",
                "set_size": 25,
                "overlap": 3,
                "mode": "gsea",
            }
        )
    return pd.DataFrame(rows)


@pytest.mark.unit
class TestDotPlot:
    def test_ora_gene_ratio(self, service, enrichment):
        fig, stats, ir = service.create_dot_plot(enrichment, top_n=5, mode="ora")

        assert stats == {"plot_type": "enrichment_dot_plot", "mode": "ora", "n_terms": 5}
        assert fig.layout.xaxis.title.text == "gene ratio"
        assert max(fig.data[0].x) <= 1.0
        assert "Overlap" in ir.render()

    def test_gsea_uses_nes(self, service, enrichment):
        fig, stats, _ = service.create_dot_plot(enrichment, mode="gsea")

        assert stats["n_terms"] == 4
        assert fig.layout.xaxis.title.text == "normalized enrichment score"

    def test_mixed_modes_need_mode(self, service, enrichment):
        with pytest.raises(BulkVisualizationError, match="several modes"):
            service.create_dot_plot(enrichment)

    def test_single_mode_is_inferred(self, service, enrichment):
        _, stats, _ = service.create_dot_plot(enrichment[enrichment["mode"] == "gsea"])

        assert stats["mode"] == "gsea"

    def test_empty_table(self, service, enrichment):
        with pytest.raises(BulkVisualizationError, match="empty"):
            service.create_dot_plot(enrichment.iloc[0:0])


@pytest.mark.unit
class TestRidgePlot:
    def test_terms_without_ranked_core_genes_are_skipped(self, service, enrichment, result_table):
        ranking = rank_genes(result_table, id_column="symbol")

        fig, stats, _ = service.create_ridge_plot(enrichment, ranking, top_n=10)

        assert stats["n_terms"] == 3
        assert len(fig.data) == 3

    def test_requires_gsea_rows(self, service, enrichment, result_table):
        ranking = rank_genes(result_table, id_column="symbol")

        with pytest.raises(BulkVisualizationError, match="No 'gsea' rows"):
            service.create_ridge_plot(enrichment[enrichment["mode"] == "ora"], ranking)
