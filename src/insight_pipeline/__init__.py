"""Feedback insight pipeline: AI-assisted feedback enrichment, clustering, and scoring."""

__version__ = "0.1.0"
