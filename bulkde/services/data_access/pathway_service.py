"""
KEGG pathway diagrams and pathway membership through the KEGG REST API.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd
import requests

from bulkde.config.settings import get_settings
from bulkde.core import PathwayDiagramError
from bulkde.core.analysis_ir import AnalysisStep
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

PATHWAY_ID_PATTERN = re.compile(r"^(?:path:)?([a-z]{2,4})(\d{5})$")


class PathwayDiagramService:
    """
    Fetches KEGG pathway images and links pathway genes to DE results.

    Each request is a single blocking attempt bounded by ``BULKDE_HTTP_TIMEOUT``.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = (base_url or settings.KEGG_REST_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT

    @staticmethod
    def parse_pathway_id(pathway_id: str) -> Tuple[str, str]:
        """Split 'hsa04110' into ('hsa', 'hsa04110')."""
        match = PATHWAY_ID_PATTERN.match(pathway_id.strip())
        if match is None:
            raise PathwayDiagramError(
                f"Invalid KEGG pathway id: '{pathway_id}'. Expected e.g. 'hsa04110'",
                {"pathway_id": pathway_id},
            )
        organism = match.group(1)
        return organism, f"{organism}{match.group(2)}"

    def _get(self, url: str) -> requests.Response:
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise PathwayDiagramError(f"KEGG request failed ({url}): {e}", {"url": url}) from e
        return response

    def fetch_pathway_image(
        self, pathway_id: str, path: Union[str, Path]
    ) -> Tuple[Path, Dict[str, Any], AnalysisStep]:
        """
        Download the pathway diagram PNG.

        Returns:
            Tuple of (written path, stats, IR)
        """
        _, pathway_id = self.parse_pathway_id(pathway_id)
        url = f"{self.base_url}/get/{pathway_id}/image"
        logger.info(f"Downloading KEGG pathway image {pathway_id}")
        response = self._get(url)

        if not response.content.startswith(b"\x89PNG"):
            raise PathwayDiagramError(
                f"KEGG returned no PNG image for {pathway_id}",
                {"url": url, "content_type": response.headers.get("Content-Type")},
            )

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(response.content)

        stats = {"pathway_id": pathway_id, "path": str(path), "n_bytes": len(response.content)}
        return path, stats, self._create_image_ir(pathway_id, str(path))

    def pathway_genes(self, pathway_id: str) -> List[str]:
        """Entrez ids of the pathway members (KEGG /link)."""
        organism, pathway_id = self.parse_pathway_id(pathway_id)
        url = f"{self.base_url}/link/{organism}/{pathway_id}"
        response = self._get(url)

        genes = []
        for line in response.text.splitlines():
            fields = line.strip().split("\t")
            if len(fields) == 2 and ":" in fields[1]:
                genes.append(fields[1].split(":", 1)[1])
        if not genes:
            raise PathwayDiagramError(
                f"KEGG returned no genes for pathway {pathway_id}", {"url": url}
            )
        return list(dict.fromkeys(genes))

    def pathway_gene_table(
        self,
        pathway_id: str,
        results: pd.DataFrame,
        annotation: Optional[pd.DataFrame] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        DE results of the genes in one pathway, joined through Entrez ids.

        Args:
            pathway_id: KEGG pathway id (e.g. 'hsa04110')
            results: Result table; must carry ``entrez_id`` unless ``annotation`` is given
            annotation: Annotation table with ``gene_id`` and ``entrez_id``

        Returns:
            Tuple of (one row per pathway gene, stats)
        """
        entrez_ids = self.pathway_genes(pathway_id)

        table = results.copy()
        if "entrez_id" not in table.columns:
            if annotation is None or "entrez_id" not in annotation.columns:
                raise PathwayDiagramError(
                    "Results carry no 'entrez_id' column and no annotation was given"
                )
            lookup = annotation.dropna(subset=["gene_id", "entrez_id"]).drop_duplicates("gene_id")
            table["entrez_id"] = table.index.map(
                dict(zip(lookup["gene_id"].astype(str), lookup["entrez_id"].astype(str)))
            )

        table = table[table["entrez_id"].notna()].copy()
        table["entrez_id"] = table["entrez_id"].astype(str)
        members = table[table["entrez_id"].isin(entrez_ids)]
        members = members.rename_axis("gene_id").reset_index()

        stats = {
            "pathway_id": pathway_id,
            "n_pathway_genes": len(entrez_ids),
            "n_matched": int(members["entrez_id"].nunique()),
        }
        logger.info(
            f"Pathway {pathway_id}: {stats['n_matched']}/{len(entrez_ids)} genes found in results"
        )
        return members, stats

    def _create_image_ir(self, pathway_id: str, path: str) -> AnalysisStep:
        code_template = """response = requests.get({{ url | tojson }}, timeout=60)
response.raise_for_status()
with open({{ path | tojson }}, "wb") as handle:
    handle.write(response.content)
"""
        return AnalysisStep(
            operation="requests.get",
            tool_name="fetch_pathway_image",
            description=f"Download the KEGG diagram of {pathway_id}",
            library="requests",
            code_template=code_template,
            imports=["import requests"],
            parameters={"url": f"{self.base_url}/get/{pathway_id}/image", "path": path},
            parameter_schema={},
            input_entities=[],
            output_entities=[path],
        )
