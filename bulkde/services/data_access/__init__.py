# Data access services

# BioMart annotation
from bulkde.services.data_access.annotation_service import AnnotationService

# KEGG pathway diagrams
from bulkde.services.data_access.pathway_service import PathwayDiagramService

__all__ = [
    "AnnotationService",
    "PathwayDiagramService",
]
