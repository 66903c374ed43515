"""Configuration management components."""

from .manager import ConfigManager
from .schema import PipelineConfig, ValidationError

__all__ = ["ConfigManager", "PipelineConfig", "ValidationError"]
