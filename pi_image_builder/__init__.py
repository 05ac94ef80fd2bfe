"""Raspberry Pi Kubernetes node image builder."""

from .__version__ import __version__

__all__ = ["__version__"]
