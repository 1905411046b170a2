"""SQL Server administration utilities."""

__version__ = "1.0.0"
