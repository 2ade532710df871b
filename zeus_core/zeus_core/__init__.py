"""Zeus core: pure domain logic and state persistence for review-request messaging."""

__version__ = "0.3.0"
