"""
Vigil Core

Central module exports for the Vigil continuous authentication engine.
"""

from core.orchestrator import VigilOrchestrator

__all__ = [
    "VigilOrchestrator",
]
