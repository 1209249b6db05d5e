"""Workspace isolation for analysis runs."""
