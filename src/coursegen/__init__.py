"""Generation job orchestration for multi-tenant course content."""

__version__ = "0.1.0"
