"""
Benchmark harness for directory-discovered, registry-backed services.

This package starts and stops services through their compose projects, waits
until each is both passing in the discovery registry and answering its health
endpoint, and records failure-recovery timings, startup timings and
escalating concurrent load results as per-trial CSV reports.
"""

from .main import main

__all__ = ["main"]
