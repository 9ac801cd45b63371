"""
Core modules for AI Usage Meter.

This package contains the canonical event model, field extraction, pricing,
delta reconstruction, deduplication, billing aggregation and status logic.
"""
