"""Local HTTP API for CatalogVault backups."""

__version__ = "1.0.0"
