"""Scan, connect and notification client for a BLE gateway's local REST/SSE API."""

__version__ = "0.1.0"
