"""
Chebyshev collocation for the radial direction.

Classes exported:
    ChebyshevGrid1D
"""

from .grid import ChebyshevGrid1D

__all__ = [
    "ChebyshevGrid1D",
]
