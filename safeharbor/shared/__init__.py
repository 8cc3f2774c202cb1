"""Shared models, utilities and storage for Safeharbor services."""
