"""
Configuration module for the NearMe reminder backend.

Provides centralized configuration for:
- Environment-backed application settings
- Pipeline windows and limits handed to services
"""

from backend.src.config.settings import AppSettings, get_settings
from backend.src.config.pipeline import PipelineConfig, get_pipeline_config

__all__ = [
    "AppSettings",
    "get_settings",
    "PipelineConfig",
    "get_pipeline_config",
]
