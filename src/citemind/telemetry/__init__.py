"""Buffered analytics and error telemetry."""
