"""Data models for the billing service.

This package contains Pydantic models for request/response validation,
database records, and the static plan catalog.
"""
