"""API route modules."""

from .estimating import router as estimating

__all__ = ["estimating"]
