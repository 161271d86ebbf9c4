"""Cocktail recipe store with backend-agnostic persistence and assistant tools."""

__version__ = "0.1.0"
