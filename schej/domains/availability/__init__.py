"""Availability aggregation."""

from .service import AvailabilityService

__all__ = ["AvailabilityService"]
