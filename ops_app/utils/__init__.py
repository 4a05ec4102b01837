"""Shared helpers for the operations dashboard."""
