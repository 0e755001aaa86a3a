"""Tenant-scoped cache over pluggable backends."""
