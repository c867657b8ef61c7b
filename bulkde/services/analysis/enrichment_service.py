"""
Gene set enrichment for differential expression results.

Two backends share one interface: over-representation analysis of the
significant genes against the tested background (hypergeometric test,
``gseapy.enrich``) and rank-based GSEA on the full ranking
(``gseapy.prerank``). Gene set collections come from Enrichr libraries
(GO, KEGG, Disease Ontology) or local GMT files. Adjusted p-values are
recomputed with Benjamini-Hochberg across every row of a result.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from bulkde.core.analysis_ir import AnalysisStep, ParameterSpec
from bulkde.core.results_table import (
    DEFAULT_LFC_THRESHOLD,
    DEFAULT_PADJ_THRESHOLD,
    significance_mask,
)
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

ENRICHMENT_COLUMNS = [
    "collection",
    "term",
    "enrichment_score",
    "pvalue",
    "padj",
    "core_genes",
    "set_size",
    "overlap",
    "mode",
]

# Enrichr libraries per collection and organism
COLLECTION_LIBRARIES = {
    "GO": {
        "human": "GO_Biological_Process_2023",
        "mouse": "GO_Biological_Process_2023",
        "rat": "GO_Biological_Process_2023",
    },
    "KEGG": {
        "human": "KEGG_2021_Human",
        "mouse": "KEGG_2019_Mouse",
        "rat": "KEGG_2021_Human",
    },
    "DO": {
        "human": "DisGeNET",
        "mouse": "DisGeNET",
        "rat": "DisGeNET",
    },
}

ENRICHR_ORGANISMS = {"human": "Human", "mouse": "Mouse", "rat": "Human"}

RANKING_METRICS = ("log2FoldChange", "stat", "signed_pvalue")


class EnrichmentError(Exception):
    """Base exception for enrichment analysis."""

    pass


class NamespaceMismatchError(EnrichmentError):
    """Gene identifiers share nothing with the gene set universe."""

    pass


@dataclass
class GeneSetCollection:
    """
    Named collection of gene sets.

    Attributes:
        name: Collection name (e.g., "GO", "KEGG", "DO" or a GMT stem)
        category: GO | KEGG | DO | custom
        gene_sets: Mapping term -> member gene identifiers
        source: Enrichr library name or GMT path
        organism: Enrichr organism the library was fetched for (None for GMT files)
        uppercase: Members are upper-case symbols; queries are matched upper-cased
    """

    name: str
    category: str
    gene_sets: Dict[str, List[str]]
    source: str = ""
    organism: Optional[str] = None
    uppercase: bool = False
    universe: set = field(init=False, repr=False)

    def __post_init__(self):
        self.gene_sets = {
            term: [str(g).upper() if self.uppercase else str(g) for g in genes if g]
            for term, genes in self.gene_sets.items()
        }
        self.universe = {g for genes in self.gene_sets.values() for g in genes}

    def __len__(self) -> int:
        return len(self.gene_sets)

    def restrict(
        self, genes: List[str], min_size: int = 1, max_size: int = 100000
    ) -> "GeneSetCollection":
        """Sets intersected with ``genes`` whose remaining size is within bounds."""
        keep = set(genes)
        restricted = {}
        for term, members in self.gene_sets.items():
            present = [g for g in members if g in keep]
            if min_size <= len(present) <= max_size:
                restricted[term] = present
        return GeneSetCollection(
            self.name, self.category, restricted, self.source, self.organism, self.uppercase
        )

    def match_case(self, ids: List[str]) -> List[str]:
        """Identifiers in the case the collection stores them, duplicates dropped."""
        if not self.uppercase:
            return list(ids)
        return list(dict.fromkeys(str(g).upper() for g in ids))

    def match_ranking_case(self, ranking: pd.Series) -> pd.Series:
        if not self.uppercase:
            return ranking
        matched = ranking.copy()
        matched.index = matched.index.astype(str).str.upper()
        return matched[~matched.index.duplicated(keep="first")]


def benjamini_hochberg(pvalues: pd.Series) -> pd.Series:
    """BH-adjusted p-values; NaN stays NaN."""
    adjusted = pd.Series(np.nan, index=pvalues.index, dtype=float)
    valid = pvalues.notna()
    if valid.any():
        adjusted[valid] = multipletests(
            pvalues[valid].to_numpy(dtype=float), method="fdr_bh"
        )[1]
    return adjusted


def rank_genes(
    results: pd.DataFrame,
    metric: str = "log2FoldChange",
    id_column: Optional[str] = None,
) -> pd.Series:
    """
    Genes ranked by a signed statistic, descending.

    Ties keep input order. Genes without a value, or duplicated after
    identifier mapping, are dropped (first occurrence kept).

    Args:
        results: Result table indexed by gene id
        metric: "log2FoldChange", "stat" or "signed_pvalue" (-log10(p) * sign(LFC))
        id_column: Column holding the identifiers to rank (default: index)
    """
    if metric == "signed_pvalue":
        pvalues = results["pvalue"].clip(lower=np.finfo(float).tiny)
        values = -np.log10(pvalues) * np.sign(results["log2FoldChange"])
    elif metric in results.columns:
        values = results[metric]
    else:
        raise EnrichmentError(
            f"Unknown ranking metric '{metric}'. Choose from {list(RANKING_METRICS)}"
        )

    ids = results.index if id_column is None else results[id_column]
    ranking = pd.Series(values.to_numpy(dtype=float), index=pd.Index(ids, dtype=object))
    ranking = ranking[ranking.notna() & pd.notna(ranking.index)]
    ranking.index = ranking.index.astype(str)
    ranking = ranking[~ranking.index.duplicated(keep="first")]

    order = np.argsort(-ranking.to_numpy(), kind="stable")
    ranked = ranking.iloc[order]
    ranked.name = metric
    return ranked


class EnrichmentBackend(ABC):
    """Interface for one enrichment method."""

    mode: str = ""

    @abstractmethod
    def run(
        self, genes: Union[List[str], pd.Series], collection: GeneSetCollection, **params
    ) -> pd.DataFrame:
        """Return a table with ENRICHMENT_COLUMNS (``padj`` may be uncorrected)."""


class OverRepresentationBackend(EnrichmentBackend):
    """Hypergeometric test of a gene list against an explicit background (gseapy.enrich)."""

    mode = "ora"

    def run(
        self,
        genes: List[str],
        collection: GeneSetCollection,
        background: Optional[List[str]] = None,
        min_size: int = 15,
        max_size: int = 500,
        **params,
    ) -> pd.DataFrame:
        import gseapy as gp

        background = list(background) if background is not None else sorted(collection.universe)
        restricted = collection.restrict(background, min_size, max_size)
        if len(restricted) == 0:
            logger.warning(
                f"No {collection.name} gene sets of size {min_size}-{max_size} in the background"
            )
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

        enr = gp.enrich(
            gene_list=list(genes),
            gene_sets=restricted.gene_sets,
            background=background,
            outdir=None,
            cutoff=1.0,
            no_plot=True,
            verbose=False,
        )
        raw = enr.results if enr is not None else None
        if raw is None or len(raw) == 0:
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

        overlap = raw["Overlap"].astype(str).str.split("/", expand=True)
        table = pd.DataFrame(
            {
                "collection": collection.name,
                "term": raw["Term"].astype(str).to_numpy(),
                "enrichment_score": pd.to_numeric(raw["Odds Ratio"], errors="coerce").to_numpy(),
                "pvalue": pd.to_numeric(raw["P-value"], errors="coerce").to_numpy(),
                "padj": pd.to_numeric(raw["Adjusted P-value"], errors="coerce").to_numpy(),
                "core_genes": raw["Genes"].astype(str).to_numpy(),
                "set_size": overlap[1].astype(int).to_numpy(),
                "overlap": overlap[0].astype(int).to_numpy(),
                "mode": self.mode,
            }
        )
        return table


class PrerankBackend(EnrichmentBackend):
    """Running-sum GSEA with permutation p-values on a pre-ranked list (gseapy.prerank)."""

    mode = "gsea"

    def run(
        self,
        ranking: pd.Series,
        collection: GeneSetCollection,
        min_size: int = 15,
        max_size: int = 500,
        permutation_num: int = 1000,
        seed: int = 42,
        **params,
    ) -> pd.DataFrame:
        import gseapy as gp

        restricted = collection.restrict(list(ranking.index), min_size, max_size)
        if len(restricted) == 0:
            logger.warning(
                f"No {collection.name} gene sets of size {min_size}-{max_size} in the ranking"
            )
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

        pre = gp.prerank(
            rnk=ranking,
            gene_sets=restricted.gene_sets,
            min_size=min_size,
            max_size=max_size,
            permutation_num=permutation_num,
            seed=seed,
            threads=1,
            outdir=None,
            no_plot=True,
            verbose=False,
        )
        raw = pre.res2d
        if raw is None or len(raw) == 0:
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

        terms = raw["Term"].astype(str)
        core = raw["Lead_genes"].fillna("").astype(str)
        table = pd.DataFrame(
            {
                "collection": collection.name,
                "term": terms.to_numpy(),
                "enrichment_score": pd.to_numeric(raw["NES"], errors="coerce").to_numpy(),
                "pvalue": pd.to_numeric(raw["NOM p-val"], errors="coerce").to_numpy(),
                "padj": pd.to_numeric(raw["FDR q-val"], errors="coerce").to_numpy(),
                "core_genes": core.to_numpy(),
                "set_size": [len(restricted.gene_sets.get(t, [])) for t in terms],
                "overlap": [len([g for g in c.split(";") if g]) for c in core],
                "mode": self.mode,
            }
        )
        table["es"] = pd.to_numeric(raw["ES"], errors="coerce").to_numpy()
        return table


BACKENDS = {"ora": OverRepresentationBackend, "gsea": PrerankBackend}


class EnrichmentService:
    """
    Stateless enrichment service.

    ``run_enrichment`` returns a single table; rows of each mode are adjusted
    and ordered independently.
    """

    def __init__(self, backends: Optional[Dict[str, EnrichmentBackend]] = None):
        self.backends = backends or {mode: cls() for mode, cls in BACKENDS.items()}

    def load_collection(self, category: str, organism: str = "human") -> GeneSetCollection:
        """
        Fetch a built-in collection (GO, KEGG or DO) from Enrichr.

        Raises:
            EnrichmentError: For unknown categories/organisms or download failure
        """
        import gseapy as gp

        category = category.upper()
        organism = organism.lower()
        if category not in COLLECTION_LIBRARIES:
            raise EnrichmentError(
                f"Unknown collection '{category}'. Choose from {list(COLLECTION_LIBRARIES)}"
            )
        if organism not in ENRICHR_ORGANISMS:
            raise EnrichmentError(f"Unsupported organism '{organism}'")
        if organism == "rat":
            logger.warning("Enrichr has no rat libraries; using human gene sets")

        library = COLLECTION_LIBRARIES[category][organism]
        logger.info(f"Fetching Enrichr library {library} for {category}")
        try:
            gene_sets = gp.get_library(name=library, organism=ENRICHR_ORGANISMS[organism])
        except Exception as e:
            logger.exception(f"Error fetching Enrichr library {library}: {e}")
            raise EnrichmentError(f"Failed to fetch gene set library {library}: {e}") from e

        return GeneSetCollection(
            category,
            category,
            gene_sets,
            source=library,
            organism=ENRICHR_ORGANISMS[organism],
            uppercase=True,
        )

    def load_gmt(
        self, path: Union[str, Path], name: Optional[str] = None, category: str = "custom"
    ) -> GeneSetCollection:
        """Read a collection from a local GMT file."""
        import gseapy as gp

        path = Path(path)
        if not path.exists():
            raise EnrichmentError(f"GMT file not found: {path}")
        gene_sets = gp.read_gmt(str(path))
        return GeneSetCollection(name or path.stem, category, gene_sets, source=str(path))

    def check_namespace(self, genes: List[str], collection: GeneSetCollection) -> int:
        """
        Count identifiers shared between ``genes`` and the collection.

        Raises:
            NamespaceMismatchError: If nothing is shared
        """
        shared = len(set(collection.match_case(genes)) & collection.universe)
        if shared == 0:
            examples = list(genes)[:3]
            raise NamespaceMismatchError(
                f"None of {len(genes)} gene identifiers (e.g. {examples}) occur in "
                f"collection '{collection.name}'. Map identifiers to the collection's "
                "namespace first (AnnotationService.map_identifiers)."
            )
        return shared

    def run_enrichment(
        self,
        results: pd.DataFrame,
        collections: List[GeneSetCollection],
        mode: str = "both",
        padj_threshold: float = DEFAULT_PADJ_THRESHOLD,
        lfc_threshold: float = DEFAULT_LFC_THRESHOLD,
        id_column: Optional[str] = None,
        ranking_metric: str = "log2FoldChange",
        min_size: int = 15,
        max_size: int = 500,
        permutation_num: int = 1000,
        seed: int = 42,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Run ORA and/or GSEA over every collection.

        Args:
            results: Differential expression result table
            collections: Gene set collections
            mode: "ora", "gsea" or "both"
            padj_threshold: Significance cutoff selecting ORA genes
            lfc_threshold: |log2FC| cutoff selecting ORA genes
            id_column: Column with identifiers in the collections' namespace
                (default: the result index)
            ranking_metric: Statistic used to rank genes for GSEA
            min_size: Smallest gene set tested
            max_size: Largest gene set tested
            permutation_num: GSEA permutations
            seed: GSEA random seed

        Returns:
            Tuple of (result table with a ``mode`` column, statistics, IR).
            Rows of one mode form one result: padj is adjusted across them
            and they are ordered by ascending p-value.

        Raises:
            EnrichmentError: Empty gene list or failed backend
            NamespaceMismatchError: Identifiers do not match a collection
        """
        if mode not in ("ora", "gsea", "both"):
            raise EnrichmentError(f"Invalid enrichment mode '{mode}'")
        if not collections:
            raise EnrichmentError("No gene set collections given")

        modes = ["ora", "gsea"] if mode == "both" else [mode]
        tested = results[results["pvalue"].notna()]
        ids = tested.index.to_series() if id_column is None else tested[id_column]
        ids = ids.dropna().astype(str)
        background = list(dict.fromkeys(ids))

        inputs: Dict[str, Any] = {}
        if "ora" in modes:
            mask = significance_mask(tested, padj_threshold, lfc_threshold)
            genes = list(dict.fromkeys(ids[mask.reindex(ids.index).fillna(False).astype(bool)]))
            if not genes:
                raise EnrichmentError(
                    f"No significant genes at padj < {padj_threshold} and "
                    f"|log2FC| > {lfc_threshold}; over-representation analysis needs a gene list"
                )
            inputs["ora"] = genes
        if "gsea" in modes:
            ranking = rank_genes(tested, ranking_metric, id_column)
            if ranking.empty:
                raise EnrichmentError("Gene ranking is empty")
            inputs["gsea"] = ranking

        for collection in collections:
            self.check_namespace(background, collection)

        tables: Dict[str, pd.DataFrame] = {}
        stats: Dict[str, Any] = {
            "mode": mode,
            "collections": [c.name for c in collections],
            "n_background": len(background),
        }

        for current in modes:
            backend = self.backends[current]
            frames = []
            for collection in collections:
                logger.info(f"Running {current.upper()} on {collection.name}")
                try:
                    if current == "ora":
                        frame = backend.run(
                            collection.match_case(inputs["ora"]),
                            collection,
                            background=collection.match_case(background),
                            min_size=min_size,
                            max_size=max_size,
                        )
                    else:
                        frame = backend.run(
                            collection.match_ranking_case(inputs["gsea"]),
                            collection,
                            min_size=min_size,
                            max_size=max_size,
                            permutation_num=permutation_num,
                            seed=seed,
                        )
                except Exception as e:
                    if isinstance(e, EnrichmentError):
                        raise
                    logger.exception(f"Error in {current} on {collection.name}: {e}")
                    raise EnrichmentError(
                        f"{current.upper()} failed for collection {collection.name}: {e}"
                    ) from e
                frames.append(frame)

            tables[current] = self._finalize(frames)
            stats[f"n_terms_{current}"] = int(len(tables[current]))
            stats[f"n_significant_{current}"] = int(
                (tables[current]["padj"] < padj_threshold).sum()
            )

        if "ora" in inputs:
            stats["n_ora_genes"] = len(inputs["ora"])
        if "gsea" in inputs:
            stats["n_ranked_genes"] = int(len(inputs["gsea"]))

        table = pd.concat(
            [tables[m] for m in modes if len(tables[m]) > 0] or [tables[modes[0]]],
            ignore_index=True,
        )

        ir = self._create_enrichment_ir(
            collections=collections,
            modes=modes,
            id_column=id_column,
            ranking_metric=ranking_metric,
            min_size=min_size,
            max_size=max_size,
            permutation_num=permutation_num,
            seed=seed,
        )
        return table, stats, ir

    def _finalize(self, frames: List[pd.DataFrame]) -> pd.DataFrame:
        """Concatenate, re-adjust p-values across all rows and sort by p-value."""
        frames = [f for f in frames if len(f) > 0]
        if not frames:
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

        table = pd.concat(frames, ignore_index=True)
        table = table[table["pvalue"].notna()].copy()
        table["padj"] = benjamini_hochberg(table["pvalue"])
        table = table.sort_values(["pvalue", "term"], kind="mergesort").reset_index(drop=True)
        extra = [c for c in table.columns if c not in ENRICHMENT_COLUMNS]
        return table[ENRICHMENT_COLUMNS + extra]

    def _create_enrichment_ir(
        self,
        collections: List[GeneSetCollection],
        modes: List[str],
        id_column: Optional[str],
        ranking_metric: str,
        min_size: int,
        max_size: int,
        permutation_num: int,
        seed: int,
    ) -> AnalysisStep:
        sources = {c.name: c.source for c in collections}
        organisms = {c.name: c.organism for c in collections if c.organism}
        uppercase = [c.name for c in collections if c.uppercase]
        code_template = """sources = {{ sources | tojson }}  # collection -> Enrichr library or GMT file
organisms = {{ organisms | tojson }}
uppercase = {{ uppercase | tojson }}  # Enrichr libraries hold upper-case symbols
gene_sets = {
    name: gp.get_library(name=source, organism=organisms[name]) if name in organisms else gp.read_gmt(source)
    for name, source in sources.items()
}

def match_case(name, ids):
    return list(dict.fromkeys(str(g).upper() for g in ids)) if name in uppercase else list(ids)

tested = results[results["pvalue"].notna()]
ids = {% if id_column %}tested[{{ id_column | tojson }}].astype(str){% else %}tested.index.to_series().astype(str){% endif %}
background = list(dict.fromkeys(ids.dropna()))

enrichment = {}
{% if "ora" in modes %}
sig_mask = (tested["padj"] < padj_threshold) & (tested["log2FoldChange"].abs() > lfc_threshold)
sig_genes = list(dict.fromkeys(ids[sig_mask].dropna()))
ora_tables = []
for name, sets in gene_sets.items():
    enr = gp.enrich(gene_list=match_case(name, sig_genes), gene_sets=sets, background=match_case(name, background),
                    outdir=None, cutoff=1.0, no_plot=True)
    ora_tables.append(enr.results.assign(collection=name))
ora = pd.concat(ora_tables, ignore_index=True)
ora["padj"] = multipletests(ora["P-value"], method="fdr_bh")[1]
enrichment["ora"] = ora.sort_values("P-value")
{% endif %}
{% if "gsea" in modes %}
{% if ranking_metric == "signed_pvalue" %}
metric = -np.log10(tested["pvalue"]) * np.sign(tested["log2FoldChange"])
{% else %}
metric = tested[{{ ranking_metric | tojson }}]
{% endif %}
ranking = pd.Series(metric.to_numpy(), index=ids.to_numpy()).dropna()
ranking = ranking[~ranking.index.duplicated()].sort_values(ascending=False, kind="mergesort")
gsea_tables = []
for name, sets in gene_sets.items():
    rnk = ranking
    if name in uppercase:
        rnk = ranking.set_axis(ranking.index.str.upper())
        rnk = rnk[~rnk.index.duplicated()]
    pre = gp.prerank(rnk=rnk, gene_sets=sets, min_size={{ min_size }}, max_size={{ max_size }},
                     permutation_num={{ permutation_num }}, seed={{ seed }}, threads=1, outdir=None, no_plot=True)
    gsea_tables.append(pre.res2d.assign(collection=name))
gsea = pd.concat(gsea_tables, ignore_index=True)
gsea["NOM p-val"] = gsea["NOM p-val"].astype(float)
gsea["padj"] = multipletests(gsea["NOM p-val"], method="fdr_bh")[1]
enrichment["gsea"] = gsea.sort_values("NOM p-val")
{% endif %}
"""
        return AnalysisStep(
            operation="gseapy.enrich/gseapy.prerank",
            tool_name="run_enrichment",
            description=f"Gene set enrichment ({', '.join(m.upper() for m in modes)}) "
            f"over {', '.join(sources)}",
            library="gseapy",
            code_template=code_template,
            imports=[
                "import gseapy as gp",
                "import numpy as np",
                "import pandas as pd",
                "from statsmodels.stats.multitest import multipletests",
            ],
            parameters={
                "sources": sources,
                "organisms": organisms,
                "uppercase": uppercase,
                "modes": modes,
                "id_column": id_column,
                "ranking_metric": ranking_metric,
                "min_size": min_size,
                "max_size": max_size,
                "permutation_num": permutation_num,
                "seed": seed,
            },
            parameter_schema={
                "permutation_num": ParameterSpec(
                    param_type="int",
                    papermill_injectable=False,
                    default_value=1000,
                    required=False,
                    description="GSEA permutations",
                ),
            },
            input_entities=["results"],
            output_entities=["enrichment"],
        )
