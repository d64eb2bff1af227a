"""
Services package for the draft tournament engine.
"""

from .base import BaseService
from .configuration import ConfigurationService
from .finalization_service import FinalizationService

__all__ = ['BaseService', 'ConfigurationService', 'FinalizationService']
