"""
AI Usage Meter.

Normalizes the local telemetry of AI coding-assistant CLIs into canonical
events and aggregates them into billing blocks, daily totals and quota status.
"""

__version__ = "0.1.0"
