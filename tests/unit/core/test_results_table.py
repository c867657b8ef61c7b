"""
Unit tests for result table helpers.
"""

import numpy as np
import pandas as pd
import pytest

from bulkde.core import ValidationError
from bulkde.core.results_table import (
    RESULT_COLUMNS,
    check_padj_consistency,
    filter_significant,
    label_regulation,
    read_deg_table,
    significance_mask,
    summarize,
    write_deg_table,
)
from tests.mock_data.factories import ResultTableFactory, gene_ids


@pytest.mark.unit
class TestSignificance:
    """Threshold filtering and labelling."""

    def test_simulated_genes_are_significant(self, result_table):
        significant = filter_significant(result_table)

        assert set(gene_ids(20)) <= set(significant.index)
        assert (significant["padj"] < 0.1).all()
        assert (significant["log2FoldChange"].abs() > 1.0).all()

    def test_sorted_by_padj(self, result_table):
        significant = filter_significant(result_table)

        assert significant["padj"].is_monotonic_increasing

    def test_filter_is_idempotent(self, result_table):
        once = filter_significant(result_table, 0.05, 1.0)
        twice = filter_significant(once, 0.05, 1.0)

        pd.testing.assert_frame_equal(once, twice)

    def test_thresholds_are_strict(self):
        table = pd.DataFrame(
            {"padj": [0.1, 0.09, 0.09], "log2FoldChange": [2.0, 1.0, -1.01]},
            index=["a", "b", "c"],
        )

        assert list(significance_mask(table)) == [False, False, True]

    def test_nan_padj_never_passes(self, result_table):
        mask = significance_mask(result_table, padj_threshold=1.0, lfc_threshold=0.0)

        assert not mask.iloc[-3:].any()

    def test_input_is_not_modified(self, result_table):
        before = result_table.copy()
        label_regulation(result_table)
        filter_significant(result_table)

        pd.testing.assert_frame_equal(result_table, before)

    def test_label_regulation(self, result_table):
        labelled = label_regulation(result_table)
        summary = summarize(labelled)

        assert labelled.loc[gene_ids(1)[0], "regulation"] == "up"
        assert labelled.loc[gene_ids(2)[1], "regulation"] == "down"
        assert summary["n_significant"] == summary["n_upregulated"] + summary["n_downregulated"]
        assert summary["n_genes_tested"] == 197
        assert summary["n_genes_total"] == 200

    def test_missing_columns_raise(self):
        with pytest.raises(ValidationError, match="missing columns"):
            significance_mask(pd.DataFrame({"pvalue": [0.1]}))

    def test_attrs_are_carried(self, result_table):
        result_table.attrs["contrast"] = ["condition", "treated", "control"]

        assert filter_significant(result_table).attrs["contrast"][1] == "treated"


@pytest.mark.unit
class TestPadjConsistency:
    def test_bh_table_passes(self, result_table):
        check_padj_consistency(result_table)

    def test_violation_raises(self, result_table):
        broken = result_table.copy()
        broken.iloc[0, broken.columns.get_loc("padj")] = 0.0
        broken.iloc[0, broken.columns.get_loc("pvalue")] = 0.5

        with pytest.raises(ValidationError, match="padj < pvalue"):
            check_padj_consistency(broken)


@pytest.mark.unit
class TestTableIO:
    """CSV round trip of result tables."""

    def test_round_trip_keeps_values(self, result_table, temp_workspace):
        path = write_deg_table(result_table, temp_workspace / "out" / "all_results.csv")
        restored = read_deg_table(path)

        assert path.exists()
        assert list(restored.index) == list(result_table.index)
        for column in RESULT_COLUMNS:
            np.testing.assert_array_equal(
                restored[column].to_numpy(), result_table[column].to_numpy()
            )

    def test_floats_are_bit_exact(self, temp_workspace):
        table = ResultTableFactory(n_genes=3, n_de=1, n_untested=0, with_symbols=False)
        table["baseMean"] = [27.168553130094033, 0.1 + 0.2, 1e-300]

        restored = read_deg_table(write_deg_table(table, temp_workspace / "t.csv"))

        assert restored["baseMean"].tolist() == [27.168553130094033, 0.1 + 0.2, 1e-300]

    def test_header_uses_gene_id(self, result_table, temp_workspace):
        path = write_deg_table(result_table, temp_workspace / "all_results.csv")

        assert path.read_text().splitlines()[0].startswith("gene_id,baseMean")

    def test_numeric_ids_stay_strings(self, temp_workspace):
        table = ResultTableFactory(n_genes=5, n_de=1, n_untested=0, with_symbols=False)
        table.index = ["001", "002", "003", "004", "005"]

        restored = read_deg_table(write_deg_table(table, temp_workspace / "t.csv"))

        assert list(restored.index) == ["001", "002", "003", "004", "005"]
