"""Reconciliation layer.

This package is the single source of truth for how the latest controller
and scale samples are compared and turned into a final weight.
"""
