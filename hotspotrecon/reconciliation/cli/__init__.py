"""Reconciliation command line."""

from .recon_cli import app

__all__ = ["app"]
