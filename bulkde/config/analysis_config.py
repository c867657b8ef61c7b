"""
Per-run analysis configuration with Pydantic validation.

One ``AnalysisConfig`` describes a complete pipeline run: inputs, design and
contrast, significance thresholds, annotation, enrichment and outputs. It is
stored as JSON next to the results.

Example:
    >>> from bulkde.config.analysis_config import AnalysisConfig
    >>> config = AnalysisConfig.load(Path("config.json"))
    >>> config.thresholds.padj = 0.05
    >>> config.save(Path("config.json"))
"""

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "bulkde_config.json"

SUPPORTED_ORGANISMS = ["human", "mouse", "rat"]
SUPPORTED_COLLECTIONS = ["GO", "KEGG", "DO"]


class InputConfig(BaseModel):
    """Count matrix and metadata locations plus pre-filtering."""

    counts_path: Path = Field(..., description="Genes x samples count matrix")
    metadata_path: Path = Field(..., description="Sample metadata, one row per sample")
    sample_column: Optional[str] = Field(
        None, description="Metadata column holding sample ids (default: first column)"
    )
    min_count: int = Field(10, ge=0, description="Minimum reads for the low-count filter")
    min_samples: Optional[int] = Field(
        None,
        ge=1,
        description="Samples that must reach min_count (default: smallest group)",
    )


class DesignConfig(BaseModel):
    """Model formula, contrast and the covariates used for plotting."""

    design: str = Field("~condition", description="Design formula, e.g. '~batch + condition'")
    contrast: List[str] = Field(
        ..., description="[factor, test_level, reference_level]"
    )
    reference_levels: Dict[str, str] = Field(
        default_factory=dict, description="Reference level per categorical covariate"
    )
    batch_column: Optional[str] = Field(
        None, description="Batch covariate removed from VST values for plots"
    )
    shrink_lfc: bool = Field(True, description="Apply log-fold-change shrinkage")
    cooks_filter: bool = Field(True, description="Cook's distance outlier filtering")
    independent_filter: bool = Field(True, description="Independent filtering of low-mean genes")
    n_top_heatmap: int = Field(50, ge=2, description="Genes shown in the expression heatmap")
    n_top_pca: int = Field(500, ge=2, description="Top-variance genes used for PCA")

    @field_validator("design")
    @classmethod
    def validate_design(cls, v):
        """Formula must start with '~' and name at least one term."""
        v = v.strip()
        if not v.startswith("~") or not re.search(r"[A-Za-z_]", v[1:]):
            raise ValueError(f"Invalid design formula: '{v}'. Expected e.g. '~condition'")
        return v

    @field_validator("contrast")
    @classmethod
    def validate_contrast(cls, v):
        if len(v) != 3:
            raise ValueError("Contrast must be [factor, test_level, reference_level]")
        if v[1] == v[2]:
            raise ValueError("Contrast test and reference levels must differ")
        return v

    @model_validator(mode="after")
    def contrast_factor_in_design(self):
        terms = re.findall(r"[A-Za-z_][A-Za-z0-9_.]*", self.design)
        if self.contrast[0] not in terms:
            raise ValueError(
                f"Contrast factor '{self.contrast[0]}' is not part of design '{self.design}'"
            )
        return self


class ThresholdConfig(BaseModel):
    """Joint significance rule: padj < padj AND |log2FoldChange| > lfc."""

    padj: float = Field(0.1, description="Adjusted p-value cutoff")
    lfc: float = Field(1.0, description="Absolute log2 fold-change cutoff")

    @field_validator("padj")
    @classmethod
    def validate_padj(cls, v):
        if not 0 < v <= 1:
            raise ValueError(f"padj threshold must be in (0, 1], got {v}")
        return v

    @field_validator("lfc")
    @classmethod
    def validate_lfc(cls, v):
        if v < 0:
            raise ValueError(f"lfc threshold must be non-negative, got {v}")
        return v


class AnnotationConfig(BaseModel):
    """Gene annotation retrieval through BioMart."""

    enabled: bool = Field(True, description="Annotate result tables")
    organism: str = Field("human", description="human | mouse | rat")
    table_path: Optional[Path] = Field(
        None, description="Cached annotation table; fetched and written if missing"
    )
    id_column: str = Field(
        "gene_id",
        description="Annotation column matching the count-matrix ids (gene_id | transcript_id)",
    )

    @field_validator("organism")
    @classmethod
    def validate_organism(cls, v):
        v = v.lower()
        if v not in SUPPORTED_ORGANISMS:
            raise ValueError(
                f"Invalid organism: '{v}'. Must be one of: {', '.join(SUPPORTED_ORGANISMS)}"
            )
        return v

    @field_validator("id_column")
    @classmethod
    def validate_id_column(cls, v):
        if v not in ("gene_id", "transcript_id"):
            raise ValueError("id_column must be 'gene_id' or 'transcript_id'")
        return v


class EnrichmentConfig(BaseModel):
    """Gene set enrichment settings."""

    enabled: bool = Field(True, description="Run enrichment")
    mode: Literal["ora", "gsea", "both"] = Field("both", description="Enrichment mode")
    collections: List[str] = Field(
        default_factory=lambda: list(SUPPORTED_COLLECTIONS),
        description="Built-in collections (GO, KEGG, DO)",
    )
    gmt_files: Dict[str, Path] = Field(
        default_factory=dict, description="Extra collections from local GMT files"
    )
    gene_id_type: Literal["symbol", "entrez_id", "gene_id"] = Field(
        "symbol", description="Identifier namespace of the gene sets"
    )
    min_size: int = Field(15, ge=1)
    max_size: int = Field(500, ge=1)
    permutation_num: int = Field(1000, ge=10)
    seed: int = Field(42)
    top_n: int = Field(20, ge=1, description="Terms shown in enrichment plots")
    pathway_ids: List[str] = Field(
        default_factory=list, description="KEGG pathway ids to render (e.g. 'hsa04110')"
    )

    @field_validator("collections")
    @classmethod
    def validate_collections(cls, v):
        v = [c.upper() for c in v]
        invalid = [c for c in v if c not in SUPPORTED_COLLECTIONS]
        if invalid:
            raise ValueError(
                f"Unknown collections: {invalid}. Must be among {SUPPORTED_COLLECTIONS}"
            )
        return v

    @model_validator(mode="after")
    def validate_size_bounds(self):
        if self.min_size > self.max_size:
            raise ValueError("min_size must not exceed max_size")
        return self


class OutputConfig(BaseModel):
    output_dir: Path = Field(Path("bulkde_results"))
    notebook_name: str = Field("bulkde_analysis")
    report_title: str = Field("Differential expression report")
    save_png: bool = Field(False, description="Also write PNG figures (kaleido)")


class AnalysisConfig(BaseModel):
    """
    Complete configuration of one analysis run.

    Attributes:
        name: Run name used in the report and provenance namespace
        input: Input files and low-count filter
        design: Model formula and contrast
        thresholds: Significance thresholds
        annotation: BioMart annotation
        enrichment: Gene set enrichment
        output: Output locations
    """

    name: str = Field("bulkde", description="Run name")
    input: InputConfig
    design: DesignConfig
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    annotation: AnnotationConfig = Field(default_factory=AnnotationConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)

    def save(self, path: Path) -> Path:
        """Write the configuration as indented JSON."""
        path = Path(path)
        if path.is_dir():
            path = path / CONFIG_FILE_NAME
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2))
        logger.info(f"Saved analysis config to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> "AnalysisConfig":
        """
        Load a configuration file.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the JSON is malformed or fails validation
        """
        path = Path(path)
        if path.is_dir():
            path = path / CONFIG_FILE_NAME

        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Config file {path} is not valid JSON: {e}") from e

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid config {path}:\n{e}") from e

    @classmethod
    def template(cls) -> "AnalysisConfig":
        """A starter configuration for ``bulkde init-config``."""
        return cls(
            input=InputConfig(counts_path=Path("counts.csv"), metadata_path=Path("metadata.csv")),
            design=DesignConfig(design="~condition", contrast=["condition", "treated", "control"]),
        )
