"""Durable notifications with best-effort real-time publish."""
