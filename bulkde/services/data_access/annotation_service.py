"""
Gene annotation service.

Retrieves a transcript/gene lookup table (Ensembl ids, symbol, description,
Entrez id) from BioMart through gseapy, caches it as a delimited file and
joins it onto differential expression results. Follows the 3-tuple
pattern (result, stats, IR) for the remote query.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from bulkde.config.settings import get_settings
from bulkde.core import AnnotationError
from bulkde.core.analysis_ir import AnalysisStep, ParameterSpec
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_ATTRIBUTES = [
    "ensembl_transcript_id",
    "ensembl_gene_id",
    "description",
    "external_gene_name",
    "entrezgene_id",
]

COLUMN_NAMES = {
    "ensembl_transcript_id": "transcript_id",
    "ensembl_gene_id": "gene_id",
    "description": "description",
    "external_gene_name": "symbol",
    "entrezgene_id": "entrez_id",
}

ORGANISM_DATASETS = {
    "human": "hsapiens_gene_ensembl",
    "mouse": "mmusculus_gene_ensembl",
    "rat": "rnorvegicus_gene_ensembl",
}

ANNOTATION_COLUMNS = ["symbol", "description", "entrez_id"]


def strip_version(ids: pd.Index) -> pd.Index:
    """Drop Ensembl version suffixes (ENSG00000141510.17 -> ENSG00000141510)."""
    return pd.Index([str(i).split(".", 1)[0] if str(i).startswith("ENS") else str(i) for i in ids])


class AnnotationService:
    """
    Stateless service for BioMart gene annotation.

    The query is blocking and single-attempt; failures raise
    ``AnnotationError`` and are never retried.
    """

    def __init__(self, host: Optional[str] = None):
        self.host = host or get_settings().BIOMART_HOST

    @staticmethod
    def dataset_for(organism: str) -> str:
        """BioMart dataset name for an organism."""
        try:
            return ORGANISM_DATASETS[organism.lower()]
        except KeyError:
            raise AnnotationError(
                f"Unsupported organism '{organism}'",
                {"supported": sorted(ORGANISM_DATASETS)},
            ) from None

    def fetch_annotation(
        self,
        dataset: str = "hsapiens_gene_ensembl",
        attributes: Optional[List[str]] = None,
        host: Optional[str] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Query BioMart for the annotation lookup table.

        Args:
            dataset: BioMart dataset (e.g. 'mmusculus_gene_ensembl')
            attributes: BioMart attributes (default: DEFAULT_ATTRIBUTES)
            host: BioMart host (default: BULKDE_BIOMART_HOST)

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Annotation
            table with renamed columns, stats, and IR

        Raises:
            AnnotationError: If the query fails or returns nothing
        """
        attributes = list(attributes or DEFAULT_ATTRIBUTES)
        host = host or self.host

        try:
            from gseapy import Biomart

            logger.info(f"Querying BioMart ({host}) dataset {dataset}")
            bm = Biomart(host=host)
            raw = bm.query(dataset=dataset, attributes=attributes)
        except Exception as e:
            logger.exception(f"Error querying BioMart: {e}")
            raise AnnotationError(
                f"BioMart query failed for {dataset}: {e}",
                {"dataset": dataset, "host": host},
            ) from e

        if raw is None or not isinstance(raw, pd.DataFrame) or raw.empty:
            raise AnnotationError(
                f"BioMart returned no annotation for {dataset}",
                {"dataset": dataset, "host": host},
            )

        annotation = self._normalize(raw)
        stats = {
            "dataset": dataset,
            "host": host,
            "n_rows": int(len(annotation)),
            "n_genes": int(annotation["gene_id"].nunique()) if "gene_id" in annotation else 0,
            "n_with_symbol": int(annotation["symbol"].notna().sum())
            if "symbol" in annotation
            else 0,
        }
        logger.info(f"Retrieved {stats['n_rows']} annotation rows for {stats['n_genes']} genes")
        return annotation, stats, self._create_fetch_ir(dataset, attributes, host)

    def _normalize(self, raw: pd.DataFrame) -> pd.DataFrame:
        annotation = raw.rename(columns=COLUMN_NAMES).copy()
        if "entrez_id" in annotation:
            # BioMart returns floats for the integer Entrez ids when some are missing
            entrez = pd.to_numeric(annotation["entrez_id"], errors="coerce")
            annotation["entrez_id"] = entrez.astype("Int64").astype(str).replace("<NA>", pd.NA)
        for column in ("gene_id", "transcript_id", "symbol"):
            if column in annotation:
                annotation[column] = annotation[column].astype("string")
        if "symbol" in annotation:
            annotation.loc[annotation["symbol"] == "", "symbol"] = pd.NA
        return annotation.drop_duplicates().reset_index(drop=True)

    def load_annotation(self, path: Union[str, Path]) -> pd.DataFrame:
        """Load a cached annotation table (comma- or tab-separated)."""
        path = Path(path)
        if not path.exists():
            raise AnnotationError(f"Annotation table not found: {path}", {"path": str(path)})
        sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
        annotation = pd.read_csv(path, sep=sep, dtype=str)
        logger.info(f"Loaded annotation table from {path}: {len(annotation)} rows")
        return annotation

    def save_annotation(self, annotation: pd.DataFrame, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
        annotation.to_csv(path, sep=sep, index=False)
        logger.info(f"Saved annotation table to {path}")
        return path

    def get_annotation(
        self,
        organism: str = "human",
        table_path: Optional[Union[str, Path]] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Cached table when ``table_path`` exists, otherwise a BioMart query
        whose result is written to ``table_path``.
        """
        if table_path is not None and Path(table_path).exists():
            annotation = self.load_annotation(table_path)
            stats = {"source": str(table_path), "n_rows": len(annotation)}
            return annotation, stats, self._create_load_ir(str(table_path))

        annotation, stats, ir = self.fetch_annotation(self.dataset_for(organism))
        if table_path is not None:
            self.save_annotation(annotation, table_path)
        return annotation, stats, ir

    def annotate_results(
        self,
        results: pd.DataFrame,
        annotation: pd.DataFrame,
        key: str = "gene_id",
        columns: Optional[List[str]] = None,
    ) -> pd.DataFrame:
        """
        Left-join annotation columns onto a result table by its index.

        Ensembl version suffixes on the result ids are ignored when matching.
        Genes missing from the annotation keep NaN annotations.

        Args:
            results: Result table indexed by gene or transcript id
            annotation: Table from ``fetch_annotation``/``load_annotation``
            key: Annotation column matching the result index
            columns: Annotation columns to add (default: symbol, description, entrez_id)
        """
        if key not in annotation.columns:
            raise AnnotationError(
                f"Key column '{key}' not in annotation table",
                {"available_columns": list(annotation.columns)},
            )
        columns = [c for c in (columns or ANNOTATION_COLUMNS) if c in annotation.columns and c != key]

        lookup = annotation[[key] + columns].dropna(subset=[key]).copy()
        lookup[key] = lookup[key].astype(str)
        lookup = lookup.drop_duplicates(subset=[key], keep="first").set_index(key)

        match_ids = strip_version(results.index)
        joined = lookup.reindex(match_ids)
        joined.index = results.index

        annotated = results.drop(columns=[c for c in columns if c in results.columns]).copy()
        for column in columns:
            annotated[column] = joined[column].to_numpy()

        missing = int((~match_ids.isin(lookup.index)).sum())
        if missing:
            logger.info(f"{missing}/{len(results)} genes have no annotation")
        annotated.attrs = dict(results.attrs)
        return annotated

    def map_identifiers(
        self,
        genes: Union[List[str], pd.Index, pd.Series],
        annotation: pd.DataFrame,
        source: str = "gene_id",
        target: str = "symbol",
    ) -> pd.Series:
        """
        Map identifiers between namespaces.

        Unmapped ids and duplicate targets are dropped, keeping the first
        occurrence in input order.

        Returns:
            Series indexed by source id holding the target id
        """
        for column in (source, target):
            if column not in annotation.columns:
                raise AnnotationError(
                    f"Column '{column}' not in annotation table",
                    {"available_columns": list(annotation.columns)},
                )

        lookup = annotation[[source, target]].dropna()
        lookup = lookup.astype(str).drop_duplicates(subset=[source], keep="first")
        lookup = lookup.set_index(source)[target]

        genes = pd.Index([str(g) for g in genes])
        mapped = pd.Series(lookup.reindex(strip_version(genes)).to_numpy(), index=genes)
        mapped = mapped.dropna()
        mapped = mapped[~mapped.duplicated(keep="first")]
        mapped.name = target

        logger.info(f"Mapped {len(mapped)}/{len(genes)} identifiers from {source} to {target}")
        return mapped

    def _create_fetch_ir(self, dataset: str, attributes: List[str], host: str) -> AnalysisStep:
        code_template = """bm = Biomart(host={{ host | tojson }})
annotation = bm.query(dataset={{ dataset | tojson }}, attributes={{ attributes | tojson }})
annotation = annotation.rename(columns={{ column_names | tojson }})
"""
        return AnalysisStep(
            operation="gseapy.Biomart.query",
            tool_name="fetch_annotation",
            description=f"Retrieve gene annotation for {dataset} from BioMart",
            library="gseapy",
            code_template=code_template,
            imports=["from gseapy import Biomart"],
            parameters={
                "dataset": dataset,
                "attributes": attributes,
                "host": host,
                "column_names": {a: COLUMN_NAMES.get(a, a) for a in attributes},
            },
            parameter_schema={
                "dataset": ParameterSpec(
                    param_type="str",
                    papermill_injectable=False,
                    default_value="hsapiens_gene_ensembl",
                    required=True,
                    description="BioMart dataset",
                ),
            },
            input_entities=[],
            output_entities=["annotation"],
        )

    def _create_load_ir(self, path: str) -> AnalysisStep:
        sep = "\t" if path.lower().endswith((".tsv", ".txt")) else ","
        return AnalysisStep(
            operation="pandas.read_csv",
            tool_name="load_annotation",
            description=f"Load the cached annotation table {path}",
            library="pandas",
            code_template="""annotation = pd.read_csv({{ path | tojson }}, sep={{ sep | tojson }}, dtype=str)""",
            imports=["import pandas as pd"],
            parameters={"path": path, "sep": sep},
            parameter_schema={},
            input_entities=[path],
            output_entities=["annotation"],
        )

    def create_annotate_ir(self, key: str = "gene_id") -> AnalysisStep:
        """Step that joins the annotation onto ``results`` in a replay notebook."""
        code_template = """lookup = annotation.dropna(subset=[{{ key | tojson }}]).drop_duplicates({{ key | tojson }}).set_index({{ key | tojson }})
match_ids = [i.split(".", 1)[0] if i.startswith("ENS") else i for i in results.index.astype(str)]
for column in {{ columns | tojson }}:
    if column in lookup.columns:
        results[column] = lookup[column].reindex(match_ids).to_numpy()
significant = results.loc[results.index.isin(significant.index)].sort_values("padj", kind="mergesort")
"""
        return AnalysisStep(
            operation="pandas.DataFrame.join",
            tool_name="annotate_results",
            description="Add gene symbol, description and Entrez id to the results",
            library="pandas",
            code_template=code_template,
            imports=["import pandas as pd"],
            parameters={"key": key, "columns": ANNOTATION_COLUMNS},
            parameter_schema={},
            input_entities=["results", "annotation"],
            output_entities=["results", "significant"],
        )
