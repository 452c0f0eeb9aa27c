"""Pydantic protocol models."""
