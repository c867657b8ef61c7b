"""
Bulk RNA-seq visualization service for differential expression results.

Interactive plotly figures for model diagnostics (dispersion), sample
structure (PCA, sample distances, clustered heatmaps) and test results
(MA, volcano, per-gene counts). Every method returns the figure, a
statistics dictionary and the AnalysisStep that redraws it in a notebook.
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from scipy.cluster.hierarchy import dendrogram, linkage

from bulkde.core.analysis_ir import AnalysisStep
from bulkde.core.results_table import (
    DEFAULT_LFC_THRESHOLD,
    DEFAULT_PADJ_THRESHOLD,
    significance_mask,
)
from bulkde.services.analysis.bulk_rnaseq_service import FittedModel
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)


class BulkVisualizationError(Exception):
    """Base exception for bulk RNA-seq visualization operations."""

    pass


def _cluster_order(matrix: np.ndarray) -> List[int]:
    """Leaf order of a Ward hierarchical clustering of the rows."""
    return dendrogram(linkage(matrix, method="ward"), no_plot=True)["leaves"]


class BulkVisualizationService:
    """
    Plotly visualizations for bulk RNA-seq differential expression.

    Result tables are indexed by gene id; expression matrices are
    genes x samples.
    """

    def __init__(self):
        self.significance_colors = {
            "up": "red",
            "down": "blue",
            "not_significant": "lightgray",
        }
        self.diverging_colors = px.colors.diverging.RdBu_r

        self.default_width = 900
        self.default_height = 700
        self.default_marker_size = 5
        self.default_opacity = 0.7

    def _layout(self, fig: go.Figure, title: str, xaxis: str, yaxis: str, **kwargs) -> None:
        fig.update_layout(
            title=title,
            xaxis_title=xaxis,
            yaxis_title=yaxis,
            width=kwargs.pop("width", self.default_width),
            height=kwargs.pop("height", self.default_height),
            plot_bgcolor="white",
            hovermode="closest",
            **kwargs,
        )
        fig.update_xaxes(showgrid=True, gridcolor="lightgray")
        fig.update_yaxes(showgrid=True, gridcolor="lightgray")

    def _require(self, table: pd.DataFrame, columns: List[str]) -> None:
        missing = [c for c in columns if c not in table.columns]
        if missing:
            raise BulkVisualizationError(
                f"Missing required columns: {missing}. Available columns: {list(table.columns)}"
            )

    def create_dispersion_plot(
        self, model: FittedModel, title: Optional[str] = None
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Gene-wise, fitted and final dispersions against mean normalized count.

        Both axes are logarithmic, as in DESeq2's plotDispEsts.
        """
        try:
            disp = model.dispersions.dropna(subset=["baseMean", "genewise_dispersions"])
            disp = disp[disp["baseMean"] > 0]
            if disp.empty:
                raise BulkVisualizationError("No dispersion estimates to plot")

            final_column = (
                "MAP_dispersions" if disp["MAP_dispersions"].notna().any() else "dispersions"
            )
            fitted = disp.sort_values("baseMean")

            fig = go.Figure()
            fig.add_trace(
                go.Scattergl(
                    x=disp["baseMean"],
                    y=disp["genewise_dispersions"],
                    mode="markers",
                    name="gene-wise estimate",
                    marker=dict(color="black", size=3, opacity=0.5),
                    text=disp.index,
                    hovertemplate="Gene: %{text}<br>mean: %{x:.1f}<br>dispersion: %{y:.3g}<extra></extra>",
                )
            )
            fig.add_trace(
                go.Scattergl(
                    x=disp["baseMean"],
                    y=disp[final_column],
                    mode="markers",
                    name="final estimate",
                    marker=dict(color="dodgerblue", size=3, opacity=0.6),
                    text=disp.index,
                    hovertemplate="Gene: %{text}<br>mean: %{x:.1f}<br>dispersion: %{y:.3g}<extra></extra>",
                )
            )
            fig.add_trace(
                go.Scatter(
                    x=fitted["baseMean"],
                    y=fitted["fitted_dispersions"],
                    mode="lines",
                    name="fitted trend",
                    line=dict(color="red", width=2),
                )
            )
            self._layout(
                fig,
                title or "Dispersion estimates",
                "mean of normalized counts",
                "dispersion",
            )
            fig.update_xaxes(type="log")
            fig.update_yaxes(type="log")

            stats = {
                "plot_type": "dispersion_plot",
                "n_genes": int(len(disp)),
                "final_estimate": final_column,
                "median_dispersion": float(disp[final_column].median()),
            }
            code_template = """disp = dispersions.dropna(subset=["genewise_dispersions"])
disp = disp[disp["baseMean"] > 0].sort_values("baseMean")
fig = go.Figure()
fig.add_trace(go.Scattergl(x=disp["baseMean"], y=disp["genewise_dispersions"], mode="markers", name="gene-wise", marker=dict(color="black", size=3)))
fig.add_trace(go.Scattergl(x=disp["baseMean"], y=disp[{{ final_column | tojson }}], mode="markers", name="final", marker=dict(color="dodgerblue", size=3)))
fig.add_trace(go.Scatter(x=disp["baseMean"], y=disp["fitted_dispersions"], mode="lines", name="fitted", line=dict(color="red")))
fig.update_xaxes(type="log", title="mean of normalized counts")
fig.update_yaxes(type="log", title="dispersion")
fig.show()
"""
            ir = self._plot_ir(
                "create_dispersion_plot",
                "Dispersion estimates against mean normalized count",
                code_template,
                {"final_column": final_column},
                ["dispersions"],
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.error(f"Error creating dispersion plot: {e}")
            raise BulkVisualizationError(f"Failed to create dispersion plot: {e}") from e

    def create_pca_plot(
        self,
        pca_result: Dict[str, Any],
        color_by: Optional[str] = None,
        symbol_by: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Samples on the first two principal components.

        Args:
            pca_result: Output of ``TransformationService.compute_pca``
            color_by: Metadata column for marker colour
            symbol_by: Metadata column for marker symbol
        """
        try:
            coords = pca_result["coordinates"].copy()
            variance = pca_result["variance_explained"]
            if "PC2" not in coords.columns:
                coords["PC2"] = 0.0
                variance = list(variance) + [0.0]

            for column in (color_by, symbol_by):
                if column is not None and column not in coords.columns:
                    raise BulkVisualizationError(
                        f"Column '{column}' not in sample metadata: {list(coords.columns)}"
                    )
                if column is not None:
                    coords[column] = coords[column].astype(str)

            coords["sample"] = coords.index.astype(str)
            fig = px.scatter(
                coords,
                x="PC1",
                y="PC2",
                color=color_by,
                symbol=symbol_by,
                hover_name="sample",
                color_discrete_sequence=px.colors.qualitative.Set1,
            )
            fig.update_traces(marker=dict(size=12, line=dict(width=1, color="black")))
            self._layout(
                fig,
                title or "PCA of samples",
                f"PC1: {variance[0]:.1f}% variance",
                f"PC2: {variance[1]:.1f}% variance",
                width=800,
                height=600,
            )

            stats = {
                "plot_type": "pca_plot",
                "n_samples": int(len(coords)),
                "variance_explained": [float(v) for v in variance[:2]],
                "color_by": color_by,
            }
            code_template = """fig = px.scatter(pca_df, x="PC1", y="PC2", color={{ (color_by | tojson) if color_by else "None" }}, symbol={{ (symbol_by | tojson) if symbol_by else "None" }}, hover_name=pca_df.index)
fig.update_layout(xaxis_title=f"PC1: {pca.explained_variance_ratio_[0] * 100:.1f}% variance",
                  yaxis_title=f"PC2: {pca.explained_variance_ratio_[1] * 100:.1f}% variance")
fig.show()
"""
            ir = self._plot_ir(
                "create_pca_plot",
                "PCA of samples on the most variable genes",
                code_template,
                {"color_by": color_by, "symbol_by": symbol_by},
                ["pca_df"],
                imports=["import plotly.express as px"],
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.error(f"Error creating PCA plot: {e}")
            raise BulkVisualizationError(f"Failed to create PCA plot: {e}") from e

    def create_ma_plot(
        self,
        results: pd.DataFrame,
        padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """log2 fold change against mean normalized count; significant genes coloured."""
        try:
            self._require(results, ["log2FoldChange", "padj", "baseMean"])
            table = results.dropna(subset=["log2FoldChange", "baseMean"])
            table = table[table["baseMean"] > 0]

            significant = (table["padj"] < padj_threshold).to_numpy()
            n_significant = int(significant.sum())
            x = table["baseMean"].to_numpy()
            y = table["log2FoldChange"].to_numpy()
            names = table.index.astype(str).to_numpy()

            fig = go.Figure()
            fig.add_trace(
                go.Scattergl(
                    x=x[~significant],
                    y=y[~significant],
                    mode="markers",
                    name="Not significant",
                    marker=dict(
                        color=self.significance_colors["not_significant"],
                        size=self.default_marker_size,
                        opacity=0.4,
                    ),
                    text=names[~significant],
                    hovertemplate="Gene: %{text}<br>baseMean: %{x:.1f}<br>log2FC: %{y:.2f}<extra></extra>",
                )
            )
            if n_significant:
                colors = [
                    self.significance_colors["up"] if fc > 0 else self.significance_colors["down"]
                    for fc in y[significant]
                ]
                fig.add_trace(
                    go.Scattergl(
                        x=x[significant],
                        y=y[significant],
                        mode="markers",
                        name=f"padj < {padj_threshold} ({n_significant})",
                        marker=dict(
                            color=colors,
                            size=self.default_marker_size + 1,
                            opacity=self.default_opacity,
                        ),
                        text=names[significant],
                        hovertemplate="Gene: %{text}<br>baseMean: %{x:.1f}<br>log2FC: %{y:.2f}<extra></extra>",
                    )
                )
            fig.add_hline(y=0, line_dash="dash", line_color="darkgray")
            self._layout(
                fig,
                title or f"MA plot ({n_significant} genes with padj < {padj_threshold})",
                "mean of normalized counts",
                "log2 fold change",
            )
            fig.update_xaxes(type="log")

            stats = {
                "plot_type": "ma_plot",
                "n_genes_total": int(len(table)),
                "n_genes_significant": n_significant,
                "padj_threshold": padj_threshold,
                "median_base_mean": float(np.median(x)) if len(x) else 0.0,
            }
            code_template = """ma = results.dropna(subset=["log2FoldChange"])
ma = ma[ma["baseMean"] > 0]
is_sig = ma["padj"] < padj_threshold
fig = go.Figure()
fig.add_trace(go.Scattergl(x=ma.loc[~is_sig, "baseMean"], y=ma.loc[~is_sig, "log2FoldChange"], mode="markers", name="Not significant", marker=dict(color="lightgray", size=5)))
fig.add_trace(go.Scattergl(x=ma.loc[is_sig, "baseMean"], y=ma.loc[is_sig, "log2FoldChange"], mode="markers", name="Significant", marker=dict(color="red", size=6)))
fig.add_hline(y=0, line_dash="dash", line_color="darkgray")
fig.update_xaxes(type="log", title="mean of normalized counts")
fig.update_yaxes(title="log2 fold change")
fig.show()
"""
            ir = self._plot_ir(
                "create_ma_plot",
                "MA plot of the test result",
                code_template,
                {"padj_threshold": padj_threshold},
                ["results"],
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.error(f"Error creating MA plot: {e}")
            raise BulkVisualizationError(f"Failed to create MA plot: {e}") from e

    def create_volcano_plot(
        self,
        results: pd.DataFrame,
        padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
        lfc_threshold: float = DEFAULT_LFC_THRESHOLD,
        top_n_genes: int = 10,
        label_column: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        -log10(padj) against log2 fold change.

        Args:
            results: Test result table
            padj_threshold: Adjusted p-value cutoff of the joint rule
            lfc_threshold: |log2FC| cutoff of the joint rule
            top_n_genes: Significant genes labelled, ranked by |log2FC| * -log10(padj)
            label_column: Column used for labels (e.g. 'symbol'); index when absent
        """
        try:
            self._require(results, ["log2FoldChange", "padj"])
            table = results.dropna(subset=["log2FoldChange"])

            log2fc = table["log2FoldChange"].to_numpy()
            padj = table["padj"].fillna(1.0).to_numpy()
            neg_log_padj = -np.log10(padj + 1e-300)

            significant = significance_mask(table, padj_threshold, lfc_threshold).to_numpy()
            up = significant & (log2fc > 0)
            down = significant & (log2fc < 0)
            rest = ~significant

            if label_column and label_column in table.columns:
                labels = table[label_column].fillna(pd.Series(table.index, index=table.index))
                labels = labels.astype(str).to_numpy()
            else:
                labels = table.index.astype(str).to_numpy()

            fig = go.Figure()
            groups = [
                (rest, "Not significant", "not_significant", 0.4),
                (up, f"Up ({int(up.sum())})", "up", self.default_opacity),
                (down, f"Down ({int(down.sum())})", "down", self.default_opacity),
            ]
            for mask, name, color, opacity in groups:
                if not mask.any():
                    continue
                fig.add_trace(
                    go.Scattergl(
                        x=log2fc[mask],
                        y=neg_log_padj[mask],
                        mode="markers",
                        name=name,
                        marker=dict(
                            color=self.significance_colors[color],
                            size=self.default_marker_size,
                            opacity=opacity,
                        ),
                        text=labels[mask],
                        hovertemplate="Gene: %{text}<br>log2FC: %{x:.2f}<br>-log10(padj): %{y:.2f}<extra></extra>",
                    )
                )

            labelled = 0
            if top_n_genes > 0 and significant.any():
                score = np.where(significant, np.abs(log2fc) * neg_log_padj, -np.inf)
                order = np.argsort(-score, kind="stable")[:top_n_genes]
                for idx in order:
                    if not significant[idx]:
                        break
                    fig.add_annotation(
                        x=log2fc[idx],
                        y=neg_log_padj[idx],
                        text=labels[idx],
                        showarrow=True,
                        arrowhead=2,
                        ax=20 if log2fc[idx] > 0 else -20,
                        ay=-20,
                        font=dict(size=9, color="black"),
                        bgcolor="rgba(255,255,255,0.8)",
                    )
                    labelled += 1

            fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="darkgray")
            fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="darkgray")
            fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="darkgray")
            self._layout(
                fig,
                title or f"Volcano plot ({int(up.sum())} up, {int(down.sum())} down)",
                "log2 fold change",
                "-log10(padj)",
            )

            stats = {
                "plot_type": "volcano_plot",
                "n_genes_total": int(len(table)),
                "n_genes_up": int(up.sum()),
                "n_genes_down": int(down.sum()),
                "n_genes_not_significant": int(rest.sum()),
                "padj_threshold": padj_threshold,
                "lfc_threshold": lfc_threshold,
                "top_n_genes_labeled": labelled,
            }
            code_template = """volcano = results.dropna(subset=["log2FoldChange"]).copy()
volcano["neg_log_padj"] = -np.log10(volcano["padj"].fillna(1.0) + 1e-300)
is_sig = (volcano["padj"] < padj_threshold) & (volcano["log2FoldChange"].abs() > lfc_threshold)
volcano["regulation"] = np.where(~is_sig, "unchanged", np.where(volcano["log2FoldChange"] > 0, "up", "down"))
fig = px.scatter(volcano, x="log2FoldChange", y="neg_log_padj", color="regulation",
                 color_discrete_map={"up": "red", "down": "blue", "unchanged": "lightgray"}, hover_name=volcano.index)
fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="darkgray")
fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="darkgray")
fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="darkgray")
fig.show()
"""
            ir = self._plot_ir(
                "create_volcano_plot",
                "Volcano plot of the test result",
                code_template,
                {
                    "padj_threshold": padj_threshold,
                    "lfc_threshold": lfc_threshold,
                    "top_n_genes": top_n_genes,
                },
                ["results"],
                imports=["import numpy as np", "import plotly.express as px"],
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.error(f"Error creating volcano plot: {e}")
            raise BulkVisualizationError(f"Failed to create volcano plot: {e}") from e

    def create_expression_heatmap(
        self,
        values: pd.DataFrame,
        genes: Optional[List[str]] = None,
        metadata: Optional[pd.DataFrame] = None,
        cluster_samples: bool = True,
        cluster_genes: bool = True,
        z_score: bool = True,
        n_top: int = 50,
        annotate_by: Optional[str] = None,
        gene_labels: Optional[pd.Series] = None,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Clustered heatmap of genes x samples.

        Args:
            values: Genes x samples (VST or batch-corrected VST)
            genes: Genes to show; top ``n_top`` variance genes when None
            metadata: Sample metadata for column labels
            cluster_samples: Order samples by Ward clustering
            cluster_genes: Order genes by Ward clustering
            z_score: Scale each gene to mean 0, sd 1
            annotate_by: Metadata column appended to sample labels
            gene_labels: Display names per gene id (e.g. symbols)
        """
        try:
            if genes is not None:
                missing = [g for g in genes if g not in values.index]
                if missing:
                    logger.warning(f"Genes not found: {missing[:10]}")
                genes = [g for g in genes if g in values.index]
                if not genes:
                    raise BulkVisualizationError("No valid genes found in gene list")
            else:
                variances = values.var(axis=1)
                genes = list(variances.sort_values(ascending=False, kind="mergesort").index[:n_top])

            matrix = values.loc[genes].to_numpy(dtype=float)
            matrix = np.nan_to_num(matrix, nan=0.0)
            if z_score:
                std = matrix.std(axis=1, keepdims=True)
                std[std == 0] = 1
                matrix = (matrix - matrix.mean(axis=1, keepdims=True)) / std

            gene_names = np.array(genes, dtype=object)
            sample_names = np.array(values.columns.astype(str), dtype=object)

            if cluster_genes and matrix.shape[0] > 2:
                order = _cluster_order(matrix)
                matrix = matrix[order, :]
                gene_names = gene_names[order]
            if cluster_samples and matrix.shape[1] > 2:
                order = _cluster_order(matrix.T)
                matrix = matrix[:, order]
                sample_names = sample_names[order]

            x_labels = list(sample_names)
            if metadata is not None and annotate_by and annotate_by in metadata.columns:
                x_labels = [f"{s} ({metadata.loc[s, annotate_by]})" for s in sample_names]
            y_labels = list(gene_names)
            if gene_labels is not None:
                y_labels = [
                    str(gene_labels.get(g)) if pd.notna(gene_labels.get(g)) else str(g)
                    for g in gene_names
                ]

            fig = go.Figure(
                data=go.Heatmap(
                    z=matrix,
                    x=x_labels,
                    y=y_labels,
                    colorscale=self.diverging_colors if z_score else "Viridis",
                    zmid=0 if z_score else None,
                    colorbar=dict(title="z-score" if z_score else "expression"),
                    hovertemplate="Sample: %{x}<br>Gene: %{y}<br>Value: %{z:.2f}<extra></extra>",
                )
            )
            self._layout(
                fig,
                title or f"Expression heatmap ({len(gene_names)} genes)",
                "Samples",
                "Genes",
                width=max(self.default_width, 40 * len(sample_names)),
                height=max(self.default_height, 15 * len(gene_names)),
            )
            fig.update_xaxes(tickangle=45, tickfont=dict(size=9), showgrid=False)
            fig.update_yaxes(tickfont=dict(size=8), showgrid=False)

            stats = {
                "plot_type": "expression_heatmap",
                "n_samples": int(len(sample_names)),
                "n_genes": int(len(gene_names)),
                "clustered_samples": cluster_samples,
                "clustered_genes": cluster_genes,
                "z_score_normalized": z_score,
            }
            code_template = """heatmap_genes = {{ genes | tojson }}
heat = vst.loc[heatmap_genes]
{% if z_score %}
heat = heat.sub(heat.mean(axis=1), axis=0).div(heat.std(axis=1, ddof=0).replace(0, 1), axis=0)
{% endif %}
{% if cluster_genes %}
heat = heat.iloc[dendrogram(linkage(heat.to_numpy(), method="ward"), no_plot=True)["leaves"], :]
{% endif %}
{% if cluster_samples %}
heat = heat.iloc[:, dendrogram(linkage(heat.T.to_numpy(), method="ward"), no_plot=True)["leaves"]]
{% endif %}
fig = go.Figure(go.Heatmap(z=heat.to_numpy(), x=heat.columns, y=heat.index, colorscale="RdBu_r", zmid=0))
fig.show()
"""
            ir = self._plot_ir(
                "create_expression_heatmap",
                f"Clustered heatmap of {len(gene_names)} genes",
                code_template,
                {
                    "genes": [str(g) for g in genes],
                    "cluster_samples": cluster_samples,
                    "cluster_genes": cluster_genes,
                    "z_score": z_score,
                },
                ["vst"],
                imports=[
                    "import plotly.graph_objects as go",
                    "from scipy.cluster.hierarchy import dendrogram, linkage",
                ],
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.error(f"Error creating expression heatmap: {e}")
            raise BulkVisualizationError(f"Failed to create expression heatmap: {e}") from e

    def create_sample_distance_heatmap(
        self, distances: pd.DataFrame, title: Optional[str] = None
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """Clustered heatmap of sample-to-sample Euclidean distances."""
        try:
            names = np.array(distances.index.astype(str), dtype=object)
            matrix = distances.to_numpy(dtype=float)
            if len(names) > 2:
                order = _cluster_order(matrix)
                matrix = matrix[np.ix_(order, order)]
                names = names[order]

            fig = go.Figure(
                data=go.Heatmap(
                    z=matrix,
                    x=list(names),
                    y=list(names),
                    colorscale="Blues_r",
                    colorbar=dict(title="distance"),
                    hovertemplate="%{x} / %{y}<br>distance: %{z:.2f}<extra></extra>",
                )
            )
            side = max(500, 40 * len(names))
            self._layout(
                fig, title or "Sample-to-sample distances", "", "", width=side + 150, height=side
            )
            fig.update_xaxes(showgrid=False, tickangle=45)
            fig.update_yaxes(showgrid=False)

            off_diagonal = matrix[~np.eye(len(names), dtype=bool)]
            stats = {
                "plot_type": "sample_distance_heatmap",
                "n_samples": int(len(names)),
                "max_distance": float(off_diagonal.max()) if off_diagonal.size else 0.0,
            }
            code_template = """dist = pd.DataFrame(squareform(pdist(vst.T.to_numpy())), index=vst.columns, columns=vst.columns)
order = dendrogram(linkage(dist.to_numpy(), method="ward"), no_plot=True)["leaves"]
dist = dist.iloc[order, order]
fig = go.Figure(go.Heatmap(z=dist.to_numpy(), x=dist.columns, y=dist.index, colorscale="Blues_r"))
fig.show()
"""
            ir = self._plot_ir(
                "create_sample_distance_heatmap",
                "Euclidean distances between samples on VST values",
                code_template,
                {},
                ["vst"],
                imports=[
                    "import pandas as pd",
                    "import plotly.graph_objects as go",
                    "from scipy.cluster.hierarchy import dendrogram, linkage",
                    "from scipy.spatial.distance import pdist, squareform",
                ],
            )
            return fig, stats, ir

        except Exception as e:
            logger.error(f"Error creating sample distance heatmap: {e}")
            raise BulkVisualizationError(f"Failed to create sample distance heatmap: {e}") from e

    def create_gene_counts_plot(
        self,
        normalized: pd.DataFrame,
        metadata: pd.DataFrame,
        gene: str,
        group_by: str,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """Normalized counts of one gene per sample, grouped by a covariate (plotCounts)."""
        try:
            if gene not in normalized.index:
                raise BulkVisualizationError(f"Gene '{gene}' not in normalized counts")
            if group_by not in metadata.columns:
                raise BulkVisualizationError(f"Column '{group_by}' not in sample metadata")

            frame = pd.DataFrame(
                {
                    "sample": normalized.columns.astype(str),
                    "count": normalized.loc[gene].to_numpy(dtype=float) + 0.5,
                    group_by: metadata.loc[normalized.columns, group_by].astype(str).to_numpy(),
                }
            )
            fig = px.strip(frame, x=group_by, y="count", color=group_by, hover_name="sample")
            fig.update_traces(marker=dict(size=10))
            self._layout(
                fig, title or f"{gene}", group_by, "normalized count", width=600, height=500
            )
            fig.update_yaxes(type="log")

            means = frame.groupby(group_by)["count"].mean() - 0.5
            stats = {
                "plot_type": "gene_counts_plot",
                "gene": gene,
                "group_means": {str(k): float(v) for k, v in means.items()},
            }
            code_template = """gene_counts = pd.DataFrame({"count": normalized.loc[{{ gene | tojson }}] + 0.5, {{ group_by | tojson }}: metadata[{{ group_by | tojson }}].astype(str)})
fig = px.strip(gene_counts, x={{ group_by | tojson }}, y="count", color={{ group_by | tojson }}, log_y=True)
fig.show()
"""
            ir = self._plot_ir(
                "create_gene_counts_plot",
                f"Normalized counts of {gene} by {group_by}",
                code_template,
                {"gene": gene, "group_by": group_by},
                ["normalized", "metadata"],
                imports=["import pandas as pd", "import plotly.express as px"],
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.error(f"Error creating gene counts plot: {e}")
            raise BulkVisualizationError(f"Failed to create gene counts plot: {e}") from e

    def _plot_ir(
        self,
        tool_name: str,
        description: str,
        code_template: str,
        parameters: Dict[str, Any],
        inputs: List[str],
        imports: Optional[List[str]] = None,
    ) -> AnalysisStep:
        return AnalysisStep(
            operation=f"visualization.{tool_name.replace('create_', '')}",
            tool_name=tool_name,
            description=description,
            library="plotly",
            code_template=code_template,
            imports=imports or ["import plotly.graph_objects as go"],
            parameters=parameters,
            parameter_schema={},
            input_entities=inputs,
            output_entities=["fig"],
        )
