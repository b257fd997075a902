"""Utility helpers shared by blueprints and services."""
