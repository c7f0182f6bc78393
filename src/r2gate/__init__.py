"""r2gate - access control gateway for multi-tenant R2 object storage."""

__version__ = "0.1.0"
