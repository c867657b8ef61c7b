"""Analysis, data access, visualization and reporting services."""
