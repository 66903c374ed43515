"""Persistent schema for survey data."""

from .survey_schema import bootstrap_schema, list_indexes, list_tables

__all__ = ["bootstrap_schema", "list_indexes", "list_tables"]
