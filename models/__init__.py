"""Shared pydantic models."""
