"""
Legendre Collocation in Colatitude
==================================

Gauss-Legendre nodes on one hemisphere and right-acting operators for
axisymmetric fields symmetric about the equator.

Public API
----------
Grid classes:
    LegendreGrid
"""

from .grid import LegendreGrid

__all__ = [
    "LegendreGrid",
]
