"""
Bulk RNA-seq differential expression service.

Fits the per-gene negative-binomial GLM with pydeseq2 (median-of-ratios size
factors, dispersion shrinkage toward the mean trend), tests contrasts with
the Wald test and optionally shrinks log2 fold changes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from bulkde.core import DesignError
from bulkde.core.analysis_ir import AnalysisStep, ParameterSpec
from bulkde.core.results_table import (
    DEFAULT_LFC_THRESHOLD,
    DEFAULT_PADJ_THRESHOLD,
    RESULT_COLUMNS,
    check_padj_consistency,
    filter_significant,
    label_regulation,
    summarize,
)
from bulkde.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

DISPERSION_COLUMNS = [
    "genewise_dispersions",
    "fitted_dispersions",
    "MAP_dispersions",
    "dispersions",
]


class BulkRNASeqError(Exception):
    """Base exception for bulk RNA-seq operations."""

    pass


class PyDESeq2Error(BulkRNASeqError):
    """Exception for pyDESeq2-related operations."""

    pass


@dataclass
class FittedModel:
    """
    Result of fitting the negative-binomial GLM.

    Attributes:
        dds: The fitted ``pydeseq2.dds.DeseqDataSet``
        design: Design formula
        metadata: Metadata as passed to pydeseq2 (typed covariates)
        size_factors: Per-sample size factors
        dispersions: Per-gene baseMean and dispersion estimates, one row per input gene
        coefficients: Per-gene GLM coefficients (natural log scale)
        all_zero_genes: Genes with zero counts in every sample (excluded from fitting)
        formula_components: Parsed design formula
    """

    dds: Any
    design: str
    metadata: pd.DataFrame
    size_factors: pd.Series
    dispersions: pd.DataFrame
    coefficients: pd.DataFrame
    all_zero_genes: List[str]
    formula_components: Dict[str, Any]
    inference: Any = None
    contrast_stats: Dict[Tuple[str, str, str], Any] = field(default_factory=dict)

    @property
    def gene_ids(self) -> List[str]:
        return list(self.dispersions.index)

    def normalized_counts(self) -> pd.DataFrame:
        """Size-factor normalized counts, genes x samples."""
        return pd.DataFrame(
            np.asarray(self.dds.layers["normed_counts"]),
            index=self.dds.obs_names,
            columns=self.dds.var_names,
        ).T


def _obs_or_obsm(dds, key: str):
    if key in dds.obs.columns:
        return np.asarray(dds.obs[key])
    if key in dds.obsm:
        return np.asarray(dds.obsm[key])
    raise PyDESeq2Error(f"pydeseq2 did not produce '{key}'")


def _var_or_varm(dds, key: str) -> Optional[np.ndarray]:
    if key in dds.var.columns:
        return np.array(dds.var[key], dtype=float)
    if key in dds.varm:
        return np.array(dds.varm[key], dtype=float)
    return None


class BulkRNASeqService:
    """
    Stateless service for bulk RNA-seq differential expression.

    Each public method returns its result, a statistics dictionary and the
    ``AnalysisStep`` that replays it.
    """

    def __init__(self, n_cpus: int = 1):
        self.n_cpus = n_cpus
        self.formula_service = DifferentialFormulaService()

    def fit_model(
        self,
        count_matrix: pd.DataFrame,
        metadata: pd.DataFrame,
        design: str,
        contrast: Optional[List[str]] = None,
        reference_levels: Optional[Dict[str, str]] = None,
        refit_cooks: bool = True,
    ) -> Tuple[FittedModel, Dict[str, Any], AnalysisStep]:
        """
        Fit the negative-binomial GLM for every gene.

        Args:
            count_matrix: Raw counts, genes x samples
            metadata: Sample metadata indexed by sample id
            design: Design formula (e.g., "~batch + condition")
            contrast: Optional [factor, test_level, reference_level]; its
                reference level becomes the factor's baseline
            reference_levels: Explicit reference level per categorical covariate
            refit_cooks: Refit genes with Cook's distance outliers

        Returns:
            Tuple[FittedModel, Dict[str, Any], AnalysisStep]

        Raises:
            PyDESeq2Error: If inputs are invalid or fitting fails
            FormulaError: If the design formula is malformed
        """
        try:
            from pydeseq2.dds import DeseqDataSet
            from pydeseq2.default_inference import DefaultInference

            self._validate_deseq2_inputs(count_matrix, metadata, contrast)

            reference_levels = dict(reference_levels or {})
            if contrast is not None:
                reference_levels.setdefault(contrast[0], str(contrast[2]))

            aligned = metadata.loc[count_matrix.columns.astype(str)].copy()
            components = self.formula_service.parse_formula(
                design, aligned, reference_levels
            )
            design_info = self.formula_service.construct_design_matrix(
                components, aligned, contrast
            )
            design_report = self.formula_service.validate_experimental_design(
                aligned, design
            )
            for warning in design_report["warnings"]:
                logger.warning(warning)
            prepared = self.formula_service.prepare_metadata(aligned, components)

            counts_t = count_matrix.T.astype(int)
            all_zero = list(count_matrix.index[count_matrix.sum(axis=1) == 0])
            if all_zero:
                logger.info(f"{len(all_zero)} all-zero genes are excluded from fitting")

            inference = DefaultInference(n_cpus=self.n_cpus)
            logger.info(
                f"Fitting DESeq2 model on {counts_t.shape[1]} genes x "
                f"{counts_t.shape[0]} samples with design {components['formula_string']}"
            )
            dds = DeseqDataSet(
                counts=counts_t,
                metadata=prepared,
                design=components["formula_string"],
                refit_cooks=refit_cooks,
                inference=inference,
                quiet=True,
            )
            dds.deseq2()

            model = FittedModel(
                dds=dds,
                design=components["formula_string"],
                metadata=prepared,
                size_factors=self._extract_size_factors(dds),
                dispersions=self._extract_dispersions(dds, count_matrix.index),
                coefficients=pd.DataFrame(dds.varm["LFC"]).reindex(
                    count_matrix.index.astype(str)
                ),
                all_zero_genes=[str(g) for g in all_zero],
                formula_components=components,
                inference=inference,
            )

            stats = {
                "design": model.design,
                "n_samples": int(counts_t.shape[0]),
                "n_genes": int(counts_t.shape[1]),
                "n_all_zero_genes": len(all_zero),
                "size_factor_min": float(model.size_factors.min()),
                "size_factor_max": float(model.size_factors.max()),
                "coefficients": list(model.coefficients.columns),
                "design_columns": design_info["coefficient_names"],
                "design_rank": design_info["rank"],
                "contrast_name": design_info["contrast_name"],
                "design_summary": design_report["design_summary"],
                "design_warnings": design_report["warnings"],
                "reference_levels": reference_levels,
            }

            ir = self._create_fit_ir(
                design=model.design,
                reference_levels=reference_levels,
                refit_cooks=refit_cooks,
                n_cpus=self.n_cpus,
            )
            return model, stats, ir

        except Exception as e:
            if isinstance(e, (PyDESeq2Error, DesignError)):
                raise
            logger.exception(f"Error fitting pyDESeq2 model: {e}")
            raise PyDESeq2Error(f"pyDESeq2 model fitting failed: {e}") from e

    def test_contrast(
        self,
        model: FittedModel,
        contrast: List[str],
        alpha: float = DEFAULT_PADJ_THRESHOLD,
        cooks_filter: bool = True,
        independent_filter: bool = True,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Wald test of one contrast with Benjamini-Hochberg adjusted p-values.

        Args:
            model: Output of ``fit_model``
            contrast: [factor, test_level, reference_level]
            alpha: FDR level used by independent filtering
            cooks_filter: Set p-values of Cook's outliers to NaN
            independent_filter: Optimise the mean-count filter for ``alpha``

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Result table
            (one row per gene) with RESULT_COLUMNS
        """
        try:
            from pydeseq2.ds import DeseqStats

            contrast = self._validate_contrast(model, contrast)

            logger.info(f"Running Wald test for contrast: {contrast}")
            ds = DeseqStats(
                model.dds,
                contrast=contrast,
                alpha=alpha,
                cooks_filter=cooks_filter,
                independent_filter=independent_filter,
                inference=model.inference,
                quiet=True,
            )
            ds.summary()
            model.contrast_stats[tuple(contrast)] = ds

            results = self._collect_results(ds, model, contrast, shrunk=False)
            check_padj_consistency(results)

            stats = {
                "contrast": contrast,
                "alpha": alpha,
                "cooks_filter": cooks_filter,
                "independent_filter": independent_filter,
                "n_genes_tested": int(results["pvalue"].notna().sum()),
                "n_padj_below_alpha": int((results["padj"] < alpha).sum()),
            }
            ir = self._create_test_ir(contrast, alpha, cooks_filter, independent_filter)
            return results, stats, ir

        except Exception as e:
            if isinstance(e, PyDESeq2Error):
                raise
            logger.exception(f"Error testing contrast {contrast}: {e}")
            raise PyDESeq2Error(f"pyDESeq2 Wald test failed: {e}") from e

    def resolve_shrinkage_coefficient(
        self, model: FittedModel, contrast: List[str]
    ) -> Optional[str]:
        """
        Name of the fitted coefficient matching ``contrast``, if any.

        pydeseq2 names coefficients ``factor[T.level]`` (formula designs)
        or ``factor_level_vs_reference`` (older releases).
        """
        factor, test_level, ref_level = (str(c) for c in contrast)
        available = list(model.coefficients.columns)

        candidates = [f"{factor}_{test_level}_vs_{ref_level}"]
        if model.formula_components["variable_info"][factor]["reference_level"] == ref_level:
            candidates.insert(0, f"{factor}[T.{test_level}]")

        for candidate in candidates:
            if candidate in available:
                return candidate
        return None

    def shrink_lfc(
        self, model: FittedModel, contrast: List[str]
    ) -> Tuple[pd.DataFrame, Dict[str, Any], Optional[AnalysisStep]]:
        """
        Apply empirical-Bayes (apeGLM-style) shrinkage to log2 fold changes.

        Only ``log2FoldChange`` and ``lfcSE`` change. P-values are those of
        the unshrunk Wald test. When the contrast does not correspond to a
        single fitted coefficient, a warning is logged and the unshrunk
        table is returned with a ``None`` step.
        """
        key = tuple(str(c) for c in contrast)
        if key not in model.contrast_stats:
            self.test_contrast(model, list(key))
        ds = model.contrast_stats[key]

        coeff = self.resolve_shrinkage_coefficient(model, list(key))
        if coeff is None:
            logger.warning(
                f"No fitted coefficient matches contrast {list(key)}; "
                f"available: {list(model.coefficients.columns)}. Skipping LFC shrinkage."
            )
            results = self._collect_results(ds, model, list(key), shrunk=False)
            return results, {"shrinkage_applied": False, "coefficient": None}, None

        try:
            logger.info(f"Applying LFC shrinkage on coefficient {coeff}")
            ds.lfc_shrink(coeff=coeff)
        except Exception as e:
            logger.exception(f"Error in LFC shrinkage: {e}")
            raise PyDESeq2Error(f"LFC shrinkage failed for {coeff}: {e}") from e

        results = self._collect_results(ds, model, list(key), shrunk=True)
        stats = {"shrinkage_applied": True, "coefficient": coeff}
        return results, stats, self._create_shrink_ir(coeff)

    def select_significant(
        self,
        results: pd.DataFrame,
        padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
        lfc_threshold: float = DEFAULT_LFC_THRESHOLD,
    ) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Label regulation and extract significant genes with the joint rule.

        Returns:
            Tuple of (labelled full table, significant subset, statistics, IR)
        """
        labelled = label_regulation(results, padj_threshold, lfc_threshold)
        significant = filter_significant(labelled, padj_threshold, lfc_threshold)

        stats = summarize(labelled)
        stats.update({"padj_threshold": padj_threshold, "lfc_threshold": lfc_threshold})
        logger.info(
            f"{stats['n_significant']} significant genes "
            f"({stats['n_upregulated']} up, {stats['n_downregulated']} down) at "
            f"padj < {padj_threshold} and |log2FC| > {lfc_threshold}"
        )
        return labelled, significant, stats, self._create_filter_ir(
            padj_threshold, lfc_threshold
        )

    def run_differential_expression(
        self,
        count_matrix: pd.DataFrame,
        metadata: pd.DataFrame,
        design: str,
        contrast: List[str],
        alpha: float = DEFAULT_PADJ_THRESHOLD,
        lfc_threshold: float = DEFAULT_LFC_THRESHOLD,
        shrink_lfc: bool = True,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Fit, test and optionally shrink in one call.

        The returned step is the Wald-test step; the fitting step is
        recorded under ``stats["fit_ir"]``.
        """
        model, fit_stats, fit_ir = self.fit_model(
            count_matrix, metadata, design, contrast, reference_levels
        )
        results, test_stats, test_ir = self.test_contrast(model, contrast, alpha=alpha)
        shrink_stats = {"shrinkage_applied": False}
        if shrink_lfc:
            results, shrink_stats, _ = self.shrink_lfc(model, contrast)

        labelled, _, summary, _ = self.select_significant(results, alpha, lfc_threshold)
        stats = {**fit_stats, **test_stats, **shrink_stats, **summary, "fit_ir": fit_ir}
        return labelled, stats, test_ir

    def _validate_deseq2_inputs(
        self,
        count_matrix: pd.DataFrame,
        metadata: pd.DataFrame,
        contrast: Optional[List[str]],
    ) -> None:
        if count_matrix is None:
            raise PyDESeq2Error("Count matrix is required")
        if count_matrix.empty:
            raise PyDESeq2Error("Count matrix is empty")
        if not count_matrix.dtypes.apply(lambda x: np.issubdtype(x, np.number)).all():
            raise PyDESeq2Error("Count matrix contains non-numeric data")
        if (count_matrix < 0).any().any():
            raise PyDESeq2Error("Count matrix contains negative values")
        if metadata is None or metadata.empty:
            raise PyDESeq2Error("Metadata is empty")

        missing = sorted(set(count_matrix.columns.astype(str)) - set(metadata.index.astype(str)))
        if missing:
            raise PyDESeq2Error(f"Samples in count matrix missing from metadata: {missing}")

        if contrast is None:
            return
        if len(contrast) != 3:
            raise PyDESeq2Error("Contrast must be [factor, level1, level2]")

        factor, level1, level2 = (str(c) for c in contrast)
        if factor not in metadata.columns:
            raise PyDESeq2Error(f"Contrast factor '{factor}' not found in metadata")
        factor_levels = set(metadata[factor].astype(str))
        for level in (level1, level2):
            if level not in factor_levels:
                raise PyDESeq2Error(
                    f"Contrast level '{level}' not found in factor '{factor}'"
                )

    def _validate_contrast(self, model: FittedModel, contrast: List[str]) -> List[str]:
        if contrast is None or len(contrast) != 3:
            raise PyDESeq2Error("Contrast must be [factor, level1, level2]")
        contrast = [str(c) for c in contrast]
        info = model.formula_components["variable_info"].get(contrast[0])
        if info is None:
            raise PyDESeq2Error(f"Contrast factor '{contrast[0]}' is not in the design")
        if info["type"] != "categorical":
            raise PyDESeq2Error(f"Contrast factor '{contrast[0]}' must be categorical")
        for level in contrast[1:]:
            if level not in info["levels"]:
                raise PyDESeq2Error(
                    f"Contrast level '{level}' not found in factor '{contrast[0]}'"
                )
        return contrast

    def _collect_results(
        self, ds, model: FittedModel, contrast: List[str], shrunk: bool
    ) -> pd.DataFrame:
        """Copy pydeseq2's results table into the canonical column layout."""
        results = ds.results_df.copy()
        results.index = results.index.astype(str)
        results = results.reindex(model.gene_ids)
        results = results[[c for c in RESULT_COLUMNS if c in results.columns]]
        results["contrast"] = f"{contrast[0]}_{contrast[1]}_vs_{contrast[2]}"
        results.index.name = "gene_id"
        results.attrs = {"contrast": list(contrast), "shrunk": shrunk}
        return results

    def _extract_size_factors(self, dds) -> pd.Series:
        return pd.Series(
            _obs_or_obsm(dds, "size_factors"),
            index=dds.obs_names.astype(str),
            name="size_factors",
        )

    def _extract_dispersions(self, dds, gene_index: pd.Index) -> pd.DataFrame:
        """Per-gene mean and dispersion estimates, NaN for genes pydeseq2 skipped."""
        frame = pd.DataFrame(index=dds.var_names.astype(str))
        frame["baseMean"] = np.asarray(dds.layers["normed_counts"]).mean(axis=0)
        for column in DISPERSION_COLUMNS:
            values = _var_or_varm(dds, column)
            frame[column] = values if values is not None else np.nan
        return frame.reindex(gene_index.astype(str))

    def _create_fit_ir(
        self,
        design: str,
        reference_levels: Dict[str, str],
        refit_cooks: bool,
        n_cpus: int,
    ) -> AnalysisStep:
        code_template = """# Reference levels first so coefficients read as level vs reference
reference_levels = {{ reference_levels | tojson }}
for factor, ref in reference_levels.items():
    values = metadata[factor].astype(str)
    levels = [ref] + sorted(level for level in values.unique() if level != ref)
    metadata[factor] = pd.Categorical(values, categories=levels)

inference = DefaultInference(n_cpus={{ n_cpus }})
dds = DeseqDataSet(
    counts=counts.T,  # samples x genes
    metadata=metadata,
    design={{ design | tojson }},
    refit_cooks={{ refit_cooks }},
    inference=inference,
)
dds.deseq2()
print(dds.obs["size_factors"] if "size_factors" in dds.obs else dds.obsm["size_factors"])
dispersions = pd.DataFrame(
    {c: np.array(dds.var[c] if c in dds.var else dds.varm[c], dtype=float) for c in {{ dispersion_columns | tojson }}},
    index=dds.var_names,
)
dispersions["baseMean"] = np.asarray(dds.layers["normed_counts"]).mean(axis=0)
"""
        return AnalysisStep(
            operation="pydeseq2.dds.DeseqDataSet.deseq2",
            tool_name="fit_model",
            description=(
                f"Fit the negative binomial GLM with design {design}: median-of-ratios "
                "size factors, gene-wise dispersions shrunk toward the mean trend"
            ),
            library="pydeseq2",
            code_template=code_template,
            imports=[
                "import numpy as np",
                "import pandas as pd",
                "from pydeseq2.dds import DeseqDataSet",
                "from pydeseq2.default_inference import DefaultInference",
            ],
            parameters={
                "design": design,
                "reference_levels": reference_levels,
                "refit_cooks": refit_cooks,
                "n_cpus": n_cpus,
                "dispersion_columns": DISPERSION_COLUMNS,
            },
            parameter_schema={
                "design": ParameterSpec(
                    param_type="str",
                    papermill_injectable=False,
                    default_value="~condition",
                    required=True,
                    description="Design formula",
                ),
                "n_cpus": ParameterSpec(
                    param_type="int",
                    papermill_injectable=False,
                    default_value=1,
                    required=False,
                    description="Worker processes used by pydeseq2",
                ),
            },
            input_entities=["counts", "metadata"],
            output_entities=["dds", "dispersions"],
        )

    def _create_test_ir(
        self,
        contrast: List[str],
        alpha: float,
        cooks_filter: bool,
        independent_filter: bool,
    ) -> AnalysisStep:
        code_template = """contrast = {{ contrast | tojson }}  # [factor, test_level, reference_level]
ds = DeseqStats(
    dds,
    contrast=contrast,
    alpha=alpha,
    cooks_filter={{ cooks_filter }},
    independent_filter={{ independent_filter }},
    inference=inference,
)
ds.summary()
results = ds.results_df.copy()
assert ((results["padj"] >= results["pvalue"]) | results["padj"].isna()).all()
"""
        return AnalysisStep(
            operation="pydeseq2.ds.DeseqStats.summary",
            tool_name="test_contrast",
            description=(
                f"Wald test for {contrast[0]} {contrast[1]} vs {contrast[2]} "
                "with Benjamini-Hochberg adjusted p-values"
            ),
            library="pydeseq2",
            code_template=code_template,
            imports=["from pydeseq2.ds import DeseqStats"],
            parameters={
                "contrast": list(contrast),
                "alpha": alpha,
                "cooks_filter": cooks_filter,
                "independent_filter": independent_filter,
            },
            parameter_schema={
                "alpha": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_PADJ_THRESHOLD,
                    required=False,
                    validation_rule="0 < alpha <= 1",
                    description="FDR level for independent filtering",
                ),
            },
            input_entities=["dds"],
            output_entities=["results"],
        )

    def _create_shrink_ir(self, coeff: str) -> AnalysisStep:
        code_template = """# Shrink log2 fold changes; p-values are unchanged
ds.lfc_shrink(coeff={{ coeff | tojson }})
results = ds.results_df.copy()
"""
        return AnalysisStep(
            operation="pydeseq2.ds.DeseqStats.lfc_shrink",
            tool_name="shrink_lfc",
            description=f"Empirical-Bayes shrinkage of log2 fold changes for {coeff}",
            library="pydeseq2",
            code_template=code_template,
            imports=["from pydeseq2.ds import DeseqStats"],
            parameters={"coeff": coeff},
            parameter_schema={},
            input_entities=["ds"],
            output_entities=["results"],
        )

    def _create_filter_ir(
        self, padj_threshold: float, lfc_threshold: float
    ) -> AnalysisStep:
        code_template = """mask = (results["padj"] < padj_threshold) & (results["log2FoldChange"].abs() > lfc_threshold)
significant = results.loc[mask].sort_values("padj", kind="mergesort")
print(f"{len(significant)} significant genes "
      f"({(significant['log2FoldChange'] > 0).sum()} up, {(significant['log2FoldChange'] < 0).sum()} down)")
"""
        return AnalysisStep(
            operation="pandas.DataFrame.loc",
            tool_name="select_significant",
            description="Select genes with padj below and |log2FC| above the thresholds",
            library="pandas",
            code_template=code_template,
            imports=["import pandas as pd"],
            parameters={"padj_threshold": padj_threshold, "lfc_threshold": lfc_threshold},
            parameter_schema={
                "padj_threshold": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_PADJ_THRESHOLD,
                    required=False,
                    validation_rule="0 < padj_threshold <= 1",
                    description="Adjusted p-value cutoff",
                ),
                "lfc_threshold": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_LFC_THRESHOLD,
                    required=False,
                    validation_rule="lfc_threshold >= 0",
                    description="Absolute log2 fold change cutoff",
                ),
            },
            input_entities=["results"],
            output_entities=["significant"],
        )
