"""Persistence models for the estimating service."""
