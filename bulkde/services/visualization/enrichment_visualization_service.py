"""
Plots of gene set enrichment results: dot plots for ORA and GSEA tables
and ridge plots of the ranking values of GSEA core genes.
"""

from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from bulkde.core.analysis_ir import AnalysisStep
from bulkde.services.visualization.bulk_visualization_service import (
    BulkVisualizationError,
)
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)


def _top_terms(enrichment: pd.DataFrame, top_n: int) -> pd.DataFrame:
    top = enrichment.sort_values(["padj", "pvalue"], kind="mergesort").head(top_n)
    top = top.copy()
    top["label"] = top["term"].astype(str).str.slice(0, 60) + " [" + top["collection"].astype(str) + "]"
    return top


class EnrichmentVisualizationService:
    """Dot and ridge plots for one enrichment mode at a time."""

    def _select_mode(self, enrichment: pd.DataFrame, mode: Optional[str]) -> Tuple[pd.DataFrame, str]:
        if enrichment.empty:
            raise BulkVisualizationError("Enrichment table is empty")
        modes = list(enrichment["mode"].unique())
        if mode is None:
            if len(modes) > 1:
                raise BulkVisualizationError(
                    f"Enrichment table holds several modes {modes}; pass mode="
                )
            mode = modes[0]
        table = enrichment[enrichment["mode"] == mode]
        if table.empty:
            raise BulkVisualizationError(f"No '{mode}' rows in enrichment table")
        return table, mode

    def create_dot_plot(
        self,
        enrichment: pd.DataFrame,
        top_n: int = 20,
        mode: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Top terms by padj. x is the gene ratio (ORA) or NES (GSEA), marker
        size the overlap and colour the adjusted p-value.
        """
        table, mode = self._select_mode(enrichment, mode)
        top = _top_terms(table, top_n)

        if mode == "ora":
            top["x"] = top["overlap"] / top["set_size"].replace(0, np.nan)
            x_title = "gene ratio"
        else:
            top["x"] = top["enrichment_score"]
            x_title = "normalized enrichment score"
        top = top.sort_values("x", kind="mergesort")

        fig = px.scatter(
            top,
            x="x",
            y="label",
            size="overlap",
            color="padj",
            color_continuous_scale="RdBu",
            hover_data={"pvalue": ":.2e", "padj": ":.2e", "set_size": True, "label": False},
            size_max=18,
        )
        fig.update_layout(
            title=title or f"Top {len(top)} {mode.upper()} terms",
            xaxis_title=x_title,
            yaxis_title="",
            width=950,
            height=max(450, 28 * len(top)),
            plot_bgcolor="white",
            coloraxis_colorbar=dict(title="padj"),
        )
        fig.update_xaxes(showgrid=True, gridcolor="lightgray")

        stats = {
            "plot_type": "enrichment_dot_plot",
            "mode": mode,
            "n_terms": int(len(top)),
        }
        code_template = """top = enrichment[{{ mode | tojson }}].sort_values("padj").head({{ top_n }}).copy()
{% if mode == "ora" %}
top["x"] = top["Overlap"].str.split("/").map(lambda parts: int(parts[0]) / int(parts[1]))
{% else %}
top["x"] = top["NES"].astype(float)
{% endif %}
fig = px.scatter(top.sort_values("x"), x="x", y="Term", color="padj", color_continuous_scale="RdBu")
fig.show()
"""
        ir = AnalysisStep(
            operation="visualization.enrichment_dot_plot",
            tool_name="create_dot_plot",
            description=f"Dot plot of the top {mode.upper()} terms",
            library="plotly",
            code_template=code_template,
            imports=["import plotly.express as px"],
            parameters={"mode": mode, "top_n": top_n},
            parameter_schema={},
            input_entities=["enrichment"],
            output_entities=["fig"],
        )
        return fig, stats, ir

    def create_ridge_plot(
        self,
        enrichment: pd.DataFrame,
        ranking: pd.Series,
        top_n: int = 10,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Distribution of ranking values of each top GSEA term's core genes.

        Args:
            enrichment: Enrichment table holding ``gsea`` rows
            ranking: Ranking used for GSEA (``rank_genes``)
            top_n: Number of terms shown
        """
        table, _ = self._select_mode(enrichment, "gsea")
        top = _top_terms(table, top_n)

        fig = go.Figure()
        shown = 0
        palette = px.colors.qualitative.Set2
        for i, (_, row) in enumerate(top.iloc[::-1].iterrows()):
            genes = [g for g in str(row["core_genes"]).split(";") if g in ranking.index]
            if not genes:
                continue
            fig.add_trace(
                go.Violin(
                    x=ranking.loc[genes].to_numpy(dtype=float),
                    name=row["label"],
                    orientation="h",
                    side="positive",
                    width=1.8,
                    points=False,
                    line_color=palette[i % len(palette)],
                    hoverinfo="name",
                )
            )
            shown += 1

        if shown == 0:
            logger.warning("No core genes of the top GSEA terms occur in the ranking")

        fig.update_layout(
            title=title or f"Ranking values of core genes ({shown} terms)",
            xaxis_title=ranking.name or "ranking metric",
            showlegend=False,
            width=950,
            height=max(450, 45 * max(shown, 1)),
            plot_bgcolor="white",
        )
        fig.add_vline(x=0, line_dash="dash", line_color="darkgray")

        stats = {"plot_type": "enrichment_ridge_plot", "n_terms": shown}
        code_template = """top = enrichment["gsea"].sort_values("padj").head({{ top_n }})
fig = go.Figure()
for _, row in top.iloc[::-1].iterrows():
    genes = [g for g in str(row["Lead_genes"]).split(";") if g in ranking.index]
    fig.add_trace(go.Violin(x=ranking.loc[genes], name=row["Term"], orientation="h", side="positive", points=False))
fig.update_layout(showlegend=False)
fig.show()
"""
        ir = AnalysisStep(
            operation="visualization.enrichment_ridge_plot",
            tool_name="create_ridge_plot",
            description="Ridge plot of ranking values in the core genes of the top GSEA terms",
            library="plotly",
            code_template=code_template,
            imports=["import plotly.graph_objects as go"],
            parameters={"top_n": top_n},
            parameter_schema={},
            input_entities=["enrichment", "ranking"],
            output_entities=["fig"],
        )
        return fig, stats, ir
