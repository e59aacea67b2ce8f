"""Utility helpers shared across the colloquy package."""
