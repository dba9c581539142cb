"""Estimating domain services."""
