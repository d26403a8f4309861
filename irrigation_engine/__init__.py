"""
Irrigation Engine - flow monitoring and vineyard water balance
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Irrigation Engine Team"

from . import config
from . import errors
from . import registry
from . import readings
from . import sessions
from . import storage
from . import alerts
from . import climate
from . import water_balance
from . import vri
from . import recommendation
from . import engine

from .engine import IrrigationEngine

__all__ = [
    'config', 'errors', 'registry', 'readings', 'sessions', 'storage', 'alerts',
    'climate', 'water_balance', 'vri', 'recommendation', 'engine',
    'IrrigationEngine',
]
