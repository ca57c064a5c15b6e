"""Structured reply schemas for pipeline stages."""
