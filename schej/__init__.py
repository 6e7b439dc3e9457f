"""Multi-provider calendar integration and availability aggregation."""

__version__ = "0.1.0"
