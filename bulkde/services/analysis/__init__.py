# Analysis services

from bulkde.services.analysis.bulk_rnaseq_service import BulkRNASeqService, FittedModel
from bulkde.services.analysis.differential_formula_service import DifferentialFormulaService
from bulkde.services.analysis.enrichment_service import EnrichmentService, GeneSetCollection
from bulkde.services.analysis.transformation_service import TransformationService

__all__ = [
    "BulkRNASeqService",
    "FittedModel",
    "DifferentialFormulaService",
    "EnrichmentService",
    "GeneSetCollection",
    "TransformationService",
]
