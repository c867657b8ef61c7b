"""
Linear orchestration of a full analysis run.

Loads counts, fits the model, tests the contrast, annotates, transforms,
plots, runs enrichment, renders the report and exports the replay
notebook. Every successful step is recorded in provenance together with
its replayable AnalysisStep; a failing step is recorded as failed, logged
and re-raised, which aborts the run.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from bulkde.config.analysis_config import (
    AnalysisConfig,
    EnrichmentConfig,
    ThresholdConfig,
)
from bulkde.core.analysis_ir import create_results_saving_ir
from bulkde.core.notebook_exporter import NotebookExporter
from bulkde.core.plot_manager import PlotManager
from bulkde.core.provenance import ProvenanceTracker
from bulkde.core.results_table import write_deg_table
from bulkde.services.analysis.bulk_rnaseq_service import BulkRNASeqService
from bulkde.services.analysis.enrichment_service import (
    EnrichmentError,
    EnrichmentService,
    rank_genes,
)
from bulkde.services.analysis.transformation_service import TransformationService
from bulkde.services.data_access.annotation_service import AnnotationService
from bulkde.services.data_access.pathway_service import PathwayDiagramService
from bulkde.services.data_management.count_loader_service import CountLoaderService
from bulkde.services.reporting.report_service import ReportSection, ReportService
from bulkde.services.visualization.bulk_visualization_service import (
    BulkVisualizationService,
)
from bulkde.services.visualization.enrichment_visualization_service import (
    EnrichmentVisualizationService,
)
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

PIPELINE_STEPS = [
    "load",
    "fit",
    "test",
    "shrink",
    "select",
    "annotate",
    "write_tables",
    "transform",
    "plots",
    "enrichment",
    "pathways",
    "report",
    "notebook",
]

ID_COLUMNS = {"symbol": "symbol", "entrez_id": "entrez_id", "gene_id": None}


def preserved_design(design: str, batch: str) -> Optional[str]:
    """
    Design terms kept when removing ``batch``: every term that does not
    involve the batch column, including interactions with it.

    Returns None when nothing but the batch remains.
    """
    terms = []
    for term in design.strip().lstrip("~").split("+"):
        term = term.strip()
        factors = [f.strip() for f in term.replace("*", ":").split(":")]
        if term and batch not in factors:
            terms.append(term)
    return "~" + " + ".join(terms) if terms else None


@dataclass
class PipelineResult:
    """Tables, statistics and written files of one run."""

    output_dir: Path
    results: pd.DataFrame
    significant: pd.DataFrame
    enrichment: Optional[pd.DataFrame] = None
    stats: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    files: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    report_path: Optional[Path] = None
    notebook_path: Optional[Path] = None
    provenance_path: Optional[Path] = None


def run_enrichment_on_table(
    results: pd.DataFrame,
    enrichment_config: EnrichmentConfig,
    thresholds: ThresholdConfig,
    organism: str = "human",
    service: Optional[EnrichmentService] = None,
) -> Tuple[pd.DataFrame, Dict[str, Any], Any, Optional[pd.Series]]:
    """
    Load the configured collections and run enrichment on a result table.

    Returns:
        Tuple of (enrichment table, stats, IR, GSEA ranking or None)
    """
    service = service or EnrichmentService()
    id_column = ID_COLUMNS[enrichment_config.gene_id_type]
    if id_column is not None and id_column not in results.columns:
        raise EnrichmentError(
            f"Gene sets use {enrichment_config.gene_id_type} identifiers but the results "
            f"have no '{id_column}' column; enable annotation or set gene_id_type='gene_id'"
        )

    collections = [
        service.load_collection(category, organism)
        for category in enrichment_config.collections
    ]
    collections += [
        service.load_gmt(path, name=name) for name, path in enrichment_config.gmt_files.items()
    ]

    table, stats, ir = service.run_enrichment(
        results,
        collections,
        mode=enrichment_config.mode,
        padj_threshold=thresholds.padj,
        lfc_threshold=thresholds.lfc,
        id_column=id_column,
        min_size=enrichment_config.min_size,
        max_size=enrichment_config.max_size,
        permutation_num=enrichment_config.permutation_num,
        seed=enrichment_config.seed,
    )

    ranking = None
    if enrichment_config.mode in ("gsea", "both"):
        ranking = rank_genes(results[results["pvalue"].notna()], id_column=id_column)
    return table, stats, ir, ranking


def write_enrichment_tables(enrichment: pd.DataFrame, output_dir: Path) -> List[str]:
    """One ``enrichment_<mode>.csv`` per mode present in the table."""
    written = []
    for mode, table in enrichment.groupby("mode", sort=False):
        path = Path(output_dir) / f"enrichment_{mode}.csv"
        table.to_csv(path, index=False)
        written.append(str(path))
    return written


class AnalysisPipeline:
    """
    Runs every step of an ``AnalysisConfig`` in order.

    Args:
        config: Validated analysis configuration
        progress_callback: Optional callback(step_name, current_step, total_steps)
        save_png: Override ``config.output.save_png``
    """

    def __init__(
        self,
        config: AnalysisConfig,
        progress_callback: Optional[Callable[[str, int, int], None]] = None,
        save_png: Optional[bool] = None,
    ):
        self.config = config
        self.output_dir = Path(config.output.output_dir)
        self.progress_callback = progress_callback
        self.provenance = ProvenanceTracker(namespace=config.name)
        self.plots = PlotManager(
            self.output_dir, save_png=config.output.save_png if save_png is None else save_png
        )
        self.timings: Dict[str, float] = {}
        self.model = None

        self.loader = CountLoaderService()
        self.de_service = BulkRNASeqService(n_cpus=1)
        self.transform_service = TransformationService()
        self.annotation_service = AnnotationService()
        self.enrichment_service = EnrichmentService()
        self.pathway_service = PathwayDiagramService()
        self.viz_service = BulkVisualizationService()
        self.enrichment_viz_service = EnrichmentVisualizationService()
        self.report_service = ReportService()

    @contextmanager
    def _step(self, name: str, service_name: str):
        """Time a step, report progress and record failures in provenance."""
        if self.progress_callback and name in PIPELINE_STEPS:
            self.progress_callback(name, PIPELINE_STEPS.index(name) + 1, len(PIPELINE_STEPS))
        start = time.time()
        try:
            yield
        except Exception as e:
            self.provenance.log_failure(name, service_name, e)
            logger.exception(f"Pipeline step '{name}' failed: {e}")
            raise
        finally:
            self.timings[name] = time.time() - start
            logger.debug("%s completed in %.2fs", name, self.timings[name])

    def _plot(self, name: str, section: str, created, service_name: str) -> None:
        fig, stats, ir = created
        self.plots.add_plot(name, fig, title=fig.layout.title.text or name, section=section)
        self.provenance.log_step(ir.tool_name, service_name, parameters=ir.parameters, ir=ir)

    def run(self) -> PipelineResult:
        config = self.config
        contrast = list(config.design.contrast)
        thresholds = config.thresholds
        self.output_dir.mkdir(parents=True, exist_ok=True)
        stats: Dict[str, Dict[str, Any]] = {}
        files: List[str] = []
        logger.info(f"Starting run '{config.name}' -> {self.output_dir}")

        with self._step("load", "CountLoaderService"):
            adata, stats["load"], load_ir = self.loader.load_dataset(
                config.input.counts_path,
                config.input.metadata_path,
                sample_column=config.input.sample_column,
                min_count=config.input.min_count,
                min_samples=config.input.min_samples,
                group_column=contrast[0],
            )
            counts = pd.DataFrame(
                adata.layers["counts"].T.astype("int64"),
                index=adata.var_names,
                columns=adata.obs_names,
            )
            metadata = adata.obs.copy()
            self.provenance.log_data_loading(
                [config.input.counts_path, config.input.metadata_path],
                "CountLoaderService",
                parameters=load_ir.parameters,
                ir=load_ir,
            )

        with self._step("fit", "BulkRNASeqService"):
            model, stats["fit"], fit_ir = self.de_service.fit_model(
                counts,
                metadata,
                config.design.design,
                contrast=contrast,
                reference_levels=config.design.reference_levels,
            )
            self.provenance.log_step("fit_model", "BulkRNASeqService", fit_ir.parameters, ir=fit_ir)
            self.model = model

        with self._step("test", "BulkRNASeqService"):
            results, stats["test"], test_ir = self.de_service.test_contrast(
                model,
                contrast,
                alpha=thresholds.padj,
                cooks_filter=config.design.cooks_filter,
                independent_filter=config.design.independent_filter,
            )
            self.provenance.log_step(
                "test_contrast", "BulkRNASeqService", test_ir.parameters, ir=test_ir
            )

        if config.design.shrink_lfc:
            with self._step("shrink", "BulkRNASeqService"):
                results, stats["shrink"], shrink_ir = self.de_service.shrink_lfc(model, contrast)
                if shrink_ir is not None:
                    self.provenance.log_step(
                        "shrink_lfc", "BulkRNASeqService", shrink_ir.parameters, ir=shrink_ir
                    )

        with self._step("select", "BulkRNASeqService"):
            results, significant, stats["select"], select_ir = self.de_service.select_significant(
                results, thresholds.padj, thresholds.lfc
            )
            self.provenance.log_step(
                "select_significant", "BulkRNASeqService", select_ir.parameters, ir=select_ir
            )

        annotation = None
        if config.annotation.enabled:
            with self._step("annotate", "AnnotationService"):
                annotation, stats["annotate"], annotation_ir = self.annotation_service.get_annotation(
                    config.annotation.organism, config.annotation.table_path
                )
                self.provenance.log_step(
                    annotation_ir.tool_name,
                    "AnnotationService",
                    annotation_ir.parameters,
                    ir=annotation_ir,
                )
                key = config.annotation.id_column
                results = self.annotation_service.annotate_results(results, annotation, key=key)
                significant = results.loc[significant.index]
                annotate_ir = self.annotation_service.create_annotate_ir(key)
                self.provenance.log_step(
                    "annotate_results", "AnnotationService", {"key": key}, ir=annotate_ir
                )

        with self._step("write_tables", "results_table"):
            normalized = self.transform_service.normalized_counts(model)
            written = [
                write_deg_table(results, self.output_dir / "all_results.csv"),
                write_deg_table(significant, self.output_dir / "significant_genes.csv"),
            ]
            normalized_path = self.output_dir / "normalized_counts.csv"
            normalized.to_csv(normalized_path, index_label="gene_id")
            written.append(normalized_path)
            files.extend(str(p) for p in written)

        with self._step("transform", "TransformationService"):
            vst, stats["vst"], vst_ir = self.transform_service.variance_stabilize(model, blind=True)
            self.provenance.log_step("variance_stabilize", "TransformationService", vst_ir.parameters, ir=vst_ir)

            pca_result, stats["pca"], pca_ir = self.transform_service.compute_pca(
                vst, model.metadata, n_top=config.design.n_top_pca
            )
            self.provenance.log_step("compute_pca", "TransformationService", pca_ir.parameters, ir=pca_ir)

            corrected_pca = None
            batch = config.design.batch_column
            if batch:
                corrected, stats["batch"], batch_ir = self.transform_service.remove_batch_effect(
                    vst, metadata, batch, design=preserved_design(config.design.design, batch)
                )
                self.provenance.log_step(
                    "remove_batch_effect", "TransformationService", batch_ir.parameters, ir=batch_ir
                )
                corrected_pca, stats["pca_batch_corrected"], _ = self.transform_service.compute_pca(
                    corrected, model.metadata, n_top=config.design.n_top_pca
                )
            distances = self.transform_service.sample_distances(vst)

        with self._step("plots", "BulkVisualizationService"):
            self._create_de_plots(
                model, results, significant, vst, normalized, metadata, pca_result,
                corrected_pca, distances,
            )

        enrichment = None
        if config.enrichment.enabled:
            with self._step("enrichment", "EnrichmentService"):
                enrichment, stats["enrichment"], enrichment_ir, ranking = run_enrichment_on_table(
                    results,
                    config.enrichment,
                    thresholds,
                    organism=config.annotation.organism,
                    service=self.enrichment_service,
                )
                self.provenance.log_step(
                    "run_enrichment", "EnrichmentService", enrichment_ir.parameters, ir=enrichment_ir
                )
                files.extend(write_enrichment_tables(enrichment, self.output_dir))
                self._create_enrichment_plots(enrichment, ranking)

        pathway_tables = []
        if config.enrichment.pathway_ids:
            with self._step("pathways", "PathwayDiagramService"):
                for pathway_id in config.enrichment.pathway_ids:
                    image, _, image_ir = self.pathway_service.fetch_pathway_image(
                        pathway_id, self.output_dir / f"pathway_{pathway_id}.png"
                    )
                    members, stats[f"pathway_{pathway_id}"] = self.pathway_service.pathway_gene_table(
                        pathway_id, results, annotation
                    )
                    table_path = self.output_dir / f"pathway_{pathway_id}_genes.csv"
                    members.to_csv(table_path, index=False)
                    files.extend([str(image), str(table_path)])
                    pathway_tables.append((f"KEGG {pathway_id}", members))
                    self.provenance.log_step(
                        "fetch_pathway_image",
                        "PathwayDiagramService",
                        image_ir.parameters,
                        ir=image_ir,
                        output_paths=[image],
                    )

        with self._step("save_plots", "PlotManager"):
            saved, stats["plots"] = self.plots.save_all()
            files.extend(saved)

        with self._step("report", "ReportService"):
            report_path, stats["report"] = self.report_service.render_html(
                self._report_sections(results, significant, stats, enrichment, pathway_tables),
                self.output_dir / "report.html",
                title=config.output.report_title,
                parameters=config.model_dump(mode="json"),
                versions=self.provenance.software_versions,
            )
            files.append(str(report_path))

        with self._step("notebook", "NotebookExporter"):
            save_ir = create_results_saving_ir(str(self.output_dir))
            self.provenance.log_step(
                "save_results",
                "results_table",
                save_ir.parameters,
                ir=save_ir,
                output_paths=[self.output_dir / "all_results.csv", self.output_dir / "significant_genes.csv"],
            )
            notebook_path = NotebookExporter(self.provenance, self.output_dir).export(
                config.output.notebook_name,
                description=f"{config.name}: {config.design.design}, "
                f"{contrast[1]} vs {contrast[2]}",
            )
            files.append(str(notebook_path))

        provenance_path = self.provenance.save(self.output_dir / "provenance.json")
        files.append(str(provenance_path))
        logger.info(
            f"Run '{config.name}' finished: {stats['select']['n_significant']} significant genes, "
            f"{len(files)} files written"
        )

        return PipelineResult(
            output_dir=self.output_dir,
            results=results,
            significant=significant,
            enrichment=enrichment,
            stats=stats,
            files=files,
            timings=dict(self.timings),
            report_path=report_path,
            notebook_path=notebook_path,
            provenance_path=provenance_path,
        )

    def _heatmap_genes(self, significant: pd.DataFrame, vst: pd.DataFrame) -> Optional[List[str]]:
        """Top significant genes by padj, or None (top-variance) with fewer than two."""
        n_top = self.config.design.n_top_heatmap
        genes = [g for g in significant.index[:n_top] if g in vst.index]
        return genes if len(genes) >= 2 else None

    def _create_de_plots(
        self, model, results, significant, vst, normalized, metadata, pca_result,
        corrected_pca, distances,
    ) -> None:
        factor = self.config.design.contrast[0]
        batch = self.config.design.batch_column
        thresholds = self.config.thresholds
        viz = self.viz_service
        service = "BulkVisualizationService"

        self._plot("dispersion", "Model diagnostics", viz.create_dispersion_plot(model), service)
        self._plot(
            "pca",
            "Sample structure",
            viz.create_pca_plot(pca_result, color_by=factor, symbol_by=batch),
            service,
        )
        if corrected_pca is not None:
            fig, _, _ = viz.create_pca_plot(
                corrected_pca, color_by=factor, symbol_by=batch,
                title=f"PCA after removing '{batch}'",
            )
            self.plots.add_plot("pca_batch_corrected", fig, title=fig.layout.title.text, section="Sample structure")
        self._plot(
            "sample_distances",
            "Sample structure",
            viz.create_sample_distance_heatmap(distances),
            service,
        )
        self._plot("ma", "Differential expression", viz.create_ma_plot(results, thresholds.padj), service)
        self._plot(
            "volcano",
            "Differential expression",
            viz.create_volcano_plot(
                results,
                thresholds.padj,
                thresholds.lfc,
                label_column="symbol" if "symbol" in results.columns else None,
            ),
            service,
        )
        self._plot(
            "heatmap",
            "Differential expression",
            viz.create_expression_heatmap(
                vst,
                genes=self._heatmap_genes(significant, vst),
                metadata=metadata,
                n_top=self.config.design.n_top_heatmap,
                annotate_by=factor,
                gene_labels=results["symbol"] if "symbol" in results.columns else None,
            ),
            service,
        )
        if len(significant) > 0:
            top_gene = significant.index[0]
            self._plot(
                f"counts_{top_gene}",
                "Differential expression",
                viz.create_gene_counts_plot(normalized, metadata, top_gene, factor),
                service,
            )

    def _create_enrichment_plots(self, enrichment: pd.DataFrame, ranking: Optional[pd.Series]) -> None:
        top_n = self.config.enrichment.top_n
        service = "EnrichmentVisualizationService"
        for mode in enrichment["mode"].unique():
            self._plot(
                f"enrichment_dot_{mode}",
                "Gene set enrichment",
                self.enrichment_viz_service.create_dot_plot(enrichment, top_n=top_n, mode=mode),
                service,
            )
        if ranking is not None and (enrichment["mode"] == "gsea").any():
            self._plot(
                "enrichment_ridge",
                "Gene set enrichment",
                self.enrichment_viz_service.create_ridge_plot(
                    enrichment, ranking, top_n=min(top_n, 15)
                ),
                service,
            )

    def _report_sections(
        self,
        results: pd.DataFrame,
        significant: pd.DataFrame,
        stats: Dict[str, Dict[str, Any]],
        enrichment: Optional[pd.DataFrame],
        pathway_tables: List[Tuple[str, pd.DataFrame]],
    ) -> List[ReportSection]:
        config = self.config
        factor, test_level, ref_level = config.design.contrast
        figures = self.plots.by_section()
        select = stats["select"]
        load = stats["load"]

        sections = [
            ReportSection(
                title="Data",
                text=(
                    f"{load['n_samples']} samples; {load['n_genes_filtered']} of "
                    f"{load['n_genes_raw']} genes kept after requiring at least "
                    f"{load['min_count']} reads in {load['min_samples']} samples."
                ),
                tables=[("Library sizes and size factors", self._size_factor_table(stats))],
            ),
            ReportSection(
                title="Model diagnostics",
                text=" ".join(
                    [f"Negative binomial GLM with design {config.design.design}."]
                    + stats["fit"].get("design_warnings", [])
                ),
                figures=figures.get("Model diagnostics", []),
            ),
            ReportSection(
                title="Sample structure",
                text="PCA and distances on variance-stabilized counts.",
                figures=figures.get("Sample structure", []),
            ),
            ReportSection(
                title="Differential expression",
                text=(
                    f"{factor}: {test_level} vs {ref_level}. {select['n_significant']} genes with "
                    f"padj < {config.thresholds.padj} and |log2FC| > {config.thresholds.lfc} "
                    f"({select['n_upregulated']} up, {select['n_downregulated']} down) out of "
                    f"{select['n_genes_tested']} tested."
                ),
                figures=figures.get("Differential expression", []),
                tables=[("Significant genes", significant.drop(columns=["significant"], errors="ignore"))],
            ),
        ]
        if enrichment is not None:
            tables = [
                (f"Top {mode.upper()} terms", table.head(config.enrichment.top_n))
                for mode, table in enrichment.groupby("mode", sort=False)
            ]
            sections.append(
                ReportSection(
                    title="Gene set enrichment",
                    text=f"Collections: {', '.join(stats['enrichment']['collections'])}.",
                    figures=figures.get("Gene set enrichment", []),
                    tables=tables,
                )
            )
        if pathway_tables:
            sections.append(
                ReportSection(
                    title="Pathways",
                    text="Pathway members found in the results (diagrams saved as pathway_<id>.png).",
                    tables=pathway_tables,
                )
            )
        return sections

    def _size_factor_table(self, stats: Dict[str, Dict[str, Any]]) -> pd.DataFrame:
        table = pd.Series(stats["load"]["library_sizes"], name="library_size").to_frame()
        table["size_factor"] = self.model.size_factors.reindex(table.index)
        return table
