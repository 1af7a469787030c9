"""
GeoTelemetry Scripts Package

This package contains command-line scripts for extracting normalized GPS
telemetry from action-camera videos and track files.

Available scripts:
- extract_telemetry: Extract GPS samples from an MP4 and/or GPX/IGC file
"""

__version__ = "1.0.0"
__all__ = ["extract_telemetry"]
