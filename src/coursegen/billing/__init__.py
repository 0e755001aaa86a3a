"""Checkout-to-tenant provisioning driven by payment webhooks."""
