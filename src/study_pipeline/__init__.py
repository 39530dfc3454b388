"""Durable AI task pipeline for the study assistant backend."""

__version__ = "0.1.0"
