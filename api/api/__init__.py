"""Zeus review-request API service."""

__version__ = "0.3.0"
