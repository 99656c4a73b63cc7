"""Lifecycle state machine and transactional transition service for orders and bookings."""

__version__ = "1.0.0"
