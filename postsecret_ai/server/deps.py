"""
FastAPI dependency injection - shared pipeline services.
"""

import logging
from typing import Optional

from ..pipeline.services import Services, build_services
from ..utils.config import PipelineConfig, get_config

logger = logging.getLogger(__name__)

# ── Shared singleton services ────────────────────────────────

_services: Optional[Services] = None


def get_services() -> Services:
    """Get shared Services instance (singleton, built on first request)."""
    global _services
    if _services is None:
        _services = build_services(PipelineConfig.from_app_config(get_config()))
    return _services


def set_services(services: Optional[Services]):
    """Install a prebuilt Services instance (tests, embedding apps)."""
    global _services
    _services = services


def close_services():
    """Close shared services (call on shutdown)."""
    global _services
    if _services is not None:
        _services.close()
        _services = None
