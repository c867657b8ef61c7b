"""
Unit tests for AnnotationService. BioMart is mocked.
"""

import numpy as np
import pandas as pd
import pytest

from bulkde.core import AnnotationError
from bulkde.services.data_access.annotation_service import (
    DEFAULT_ATTRIBUTES,
    AnnotationService,
    strip_version,
)
from tests.mock_data.factories import gene_ids


@pytest.fixture
def service():
    return AnnotationService(host="biomart.test")


@pytest.fixture
def biomart_frame():
    return pd.DataFrame(
        {
            "ensembl_transcript_id": ["ENST01", "ENST02", "ENST03", "ENST03"],
            "ensembl_gene_id": ["ENSG01", "ENSG01", "ENSG02", "ENSG02"],
            "description": ["kinase", "kinase", "unknown", "unknown"],
            "external_gene_name": ["ABC1", "ABC1", "", ""],
            "entrezgene_id": [1017.0, 1017.0, np.nan, np.nan],
        }
    )


@pytest.mark.unit
class TestFetchAnnotation:
    """BioMart query and normalization."""

    def test_columns_are_renamed(self, mocker, service, biomart_frame):
        biomart = mocker.patch("gseapy.Biomart")
        biomart.return_value.query.return_value = biomart_frame

        annotation, stats, ir = service.fetch_annotation("hsapiens_gene_ensembl")

        biomart.assert_called_once_with(host="biomart.test")
        biomart.return_value.query.assert_called_once_with(
            dataset="hsapiens_gene_ensembl", attributes=DEFAULT_ATTRIBUTES
        )
        assert list(annotation.columns) == [
            "transcript_id",
            "gene_id",
            "description",
            "symbol",
            "entrez_id",
        ]
        assert stats["n_rows"] == 3
        assert stats["n_genes"] == 2
        assert stats["n_with_symbol"] == 2
        assert ir.tool_name == "fetch_annotation"

    def test_entrez_ids_are_strings(self, mocker, service, biomart_frame):
        mocker.patch("gseapy.Biomart").return_value.query.return_value = biomart_frame

        annotation, _, _ = service.fetch_annotation()

        assert annotation.loc[0, "entrez_id"] == "1017"
        assert pd.isna(annotation.loc[2, "entrez_id"])
        assert pd.isna(annotation.loc[2, "symbol"])

    def test_query_failure(self, mocker, service):
        mocker.patch("gseapy.Biomart").return_value.query.side_effect = ConnectionError("down")

        with pytest.raises(AnnotationError, match="BioMart query failed"):
            service.fetch_annotation()

    def test_empty_response(self, mocker, service):
        mocker.patch("gseapy.Biomart").return_value.query.return_value = pd.DataFrame()

        with pytest.raises(AnnotationError, match="no annotation"):
            service.fetch_annotation()

    def test_dataset_for_organism(self):
        assert AnnotationService.dataset_for("Mouse") == "mmusculus_gene_ensembl"
        with pytest.raises(AnnotationError, match="Unsupported organism"):
            AnnotationService.dataset_for("yeast")


@pytest.mark.unit
class TestAnnotationCache:
    def test_cached_table_skips_biomart(self, mocker, service, annotation_table, temp_workspace):
        path = service.save_annotation(annotation_table, temp_workspace / "annotation.tsv")
        biomart = mocker.patch("gseapy.Biomart")

        annotation, stats, ir = service.get_annotation("human", path)

        biomart.assert_not_called()
        assert stats == {"source": str(path), "n_rows": len(annotation_table)}
        assert annotation["entrez_id"].tolist() == annotation_table["entrez_id"].tolist()
        assert 'sep="\\t"' in ir.render()

    def test_missing_cache_is_written(self, mocker, service, biomart_frame, temp_workspace):
        mocker.patch("gseapy.Biomart").return_value.query.return_value = biomart_frame
        path = temp_workspace / "cache" / "annotation.csv"

        _, stats, _ = service.get_annotation("human", path)

        assert path.exists()
        assert stats["dataset"] == "hsapiens_gene_ensembl"

    def test_missing_table(self, service, temp_workspace):
        with pytest.raises(AnnotationError, match="not found"):
            service.load_annotation(temp_workspace / "absent.csv")


@pytest.mark.unit
class TestAnnotateResults:
    """Joining annotation onto result tables."""

    def test_symbols_are_joined(self, service, result_table, annotation_table):
        table = result_table.drop(columns=["symbol"])

        annotated = service.annotate_results(table, annotation_table)

        assert annotated.loc[gene_ids(1)[0], "symbol"] == "GENE1"
        assert annotated.loc[gene_ids(1)[0], "entrez_id"] == "1000"
        assert list(annotated.index) == list(table.index)
        assert "symbol" not in table.columns

    def test_version_suffixes_are_ignored(self, service, annotation_table):
        table = pd.DataFrame({"padj": [0.01]}, index=[f"{gene_ids(2)[1]}.7"])

        annotated = service.annotate_results(table, annotation_table)

        assert annotated.iloc[0]["symbol"] == "GENE2"
        assert annotated.index[0].endswith(".7")

    def test_unannotated_genes_keep_nan(self, service, annotation_table):
        table = pd.DataFrame({"padj": [0.01, 0.2]}, index=[gene_ids(1)[0], "ENSG99999999999"])

        annotated = service.annotate_results(table, annotation_table)

        assert pd.isna(annotated.loc["ENSG99999999999", "symbol"])

    def test_transcript_key(self, service, annotation_table):
        table = pd.DataFrame({"padj": [0.01]}, index=["ENST00000000003"])

        annotated = service.annotate_results(table, annotation_table, key="transcript_id")

        assert annotated.iloc[0]["symbol"] == "GENE3"

    def test_unknown_key(self, service, result_table, annotation_table):
        with pytest.raises(AnnotationError, match="Key column"):
            service.annotate_results(result_table, annotation_table, key="refseq")


@pytest.mark.unit
class TestMapIdentifiers:
    def test_map_to_symbols(self, service, annotation_table):
        mapped = service.map_identifiers(gene_ids(3) + ["ENSG_UNKNOWN"], annotation_table)

        assert mapped.to_dict() == {
            gene_ids(3)[0]: "GENE1",
            gene_ids(3)[1]: "GENE2",
            gene_ids(3)[2]: "GENE3",
        }

    def test_duplicate_targets_keep_first(self, service):
        annotation = pd.DataFrame({"gene_id": ["G1", "G2"], "symbol": ["SAME", "SAME"]})

        mapped = service.map_identifiers(["G2", "G1"], annotation)

        assert mapped.to_dict() == {"G2": "SAME"}

    def test_unknown_column(self, service, annotation_table):
        with pytest.raises(AnnotationError, match="not in annotation table"):
            service.map_identifiers(["G1"], annotation_table, target="uniprot")

    def test_strip_version(self):
        assert list(strip_version(pd.Index(["ENSG1.5", "GENE.1", "ENST2"]))) == [
            "ENSG1",
            "GENE.1",
            "ENST2",
        ]
