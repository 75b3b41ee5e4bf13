"""Errors raised by the classification pipeline."""

from __future__ import annotations


class IntelligenceError(Exception):
    """Base class for classification errors."""


class InvalidImageError(IntelligenceError):
    """The input cannot be turned into a processable pixel buffer."""


class AnalysisFailedError(IntelligenceError):
    """The inference engine completed without a usable result."""
