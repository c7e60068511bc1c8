"""Shared utilities and data types."""
