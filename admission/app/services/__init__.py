"""Admission services."""
