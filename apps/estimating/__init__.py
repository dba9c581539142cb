"""Roofing estimating service."""
