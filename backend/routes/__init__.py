"""
Procurement Workflow Hub - Routes Package

Modular API routers for the workflow service.
"""

from .workflows import router as workflows_router, set_dependencies as set_workflows_deps
from .config import router as config_router, set_dependencies as set_config_deps

__all__ = [
    'workflows_router', 'set_workflows_deps',
    'config_router', 'set_config_deps',
]
