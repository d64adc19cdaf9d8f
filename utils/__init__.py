"""Complaint lifecycle, store, and request helpers."""
