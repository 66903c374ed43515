"""
Stagegate - stage gating and promotion workflow for container build pipelines.
"""

__version__ = "0.1.0"
__author__ = "Stagegate Team"

from .core import PipelineOrchestrator
from .config import ConfigManager

__all__ = ["PipelineOrchestrator", "ConfigManager"]
