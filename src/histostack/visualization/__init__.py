"""QC plotting for reconstruction and volume refinement."""

from .plotter import StackPlotter

__all__ = ['StackPlotter']
