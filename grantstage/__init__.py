"""ClickHouse access-control planning, staging and audit."""

__version__ = "0.3.0"
