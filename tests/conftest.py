"""
Pytest configuration and fixtures for the bulkde test-suite.

Provides isolated workspaces, synthetic count datasets written to disk,
result tables and a fitted model shared across a session.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pandas as pd
import pytest
from faker import Faker

from tests.mock_data.base import SMALL_DATASET_CONFIG
from tests.mock_data.factories import (
    CountDatasetFactory,
    ResultTableFactory,
    make_annotation,
)

# Suppress third-party chatter during testing
logging.getLogger("anndata").setLevel(logging.ERROR)
logging.getLogger("matplotlib").setLevel(logging.ERROR)
logging.getLogger("kaleido").setLevel(logging.ERROR)

fake = Faker()
Faker.seed(42)

TEST_WORKSPACE_PREFIX = "bulkde_test_"


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow (fits a GLM)")
    config.addinivalue_line(
        "markers", "real_api: test talks to a remote service (BioMart, Enrichr, KEGG)"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Core Infrastructure Fixtures
# ==============================================================================


@pytest.fixture(scope="function")
def temp_workspace() -> Generator[Path, None, None]:
    """Create an isolated temporary workspace for each test."""
    workspace_path = Path(tempfile.mkdtemp(prefix=TEST_WORKSPACE_PREFIX))
    try:
        yield workspace_path
    finally:
        shutil.rmtree(workspace_path, ignore_errors=True)


@pytest.fixture
def count_dataset():
    """Three control vs three treated samples with 20 simulated DE genes."""
    return CountDatasetFactory()


@pytest.fixture
def dataset_files(temp_workspace, count_dataset):
    """The count dataset written as counts.csv and metadata.csv."""
    counts_path = temp_workspace / "counts.csv"
    metadata_path = temp_workspace / "metadata.csv"
    count_dataset.counts.to_csv(counts_path, index_label="gene_id")
    count_dataset.metadata.to_csv(metadata_path, index_label="sample")
    return counts_path, metadata_path


@pytest.fixture
def result_table() -> pd.DataFrame:
    """200-gene result table with 20 strongly significant genes."""
    return ResultTableFactory()


@pytest.fixture
def annotation_table() -> pd.DataFrame:
    return make_annotation(SMALL_DATASET_CONFIG.n_genes)


@pytest.fixture(scope="session")
def fitted_model():
    """GLM fitted once per session on the small dataset (pydeseq2)."""
    from bulkde.services.analysis.bulk_rnaseq_service import BulkRNASeqService

    dataset = CountDatasetFactory()
    service = BulkRNASeqService()
    model, _, _ = service.fit_model(
        dataset.counts,
        dataset.metadata,
        "~condition",
        contrast=["condition", "treated", "control"],
    )
    return model
