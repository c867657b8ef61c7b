# Data management services

from bulkde.services.data_management.count_loader_service import CountLoaderService

__all__ = ["CountLoaderService"]
