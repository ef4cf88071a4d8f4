"""Repository layer for ride CRUD and conditional transitions."""

from .ride_repository import RideRepository

__all__ = ["RideRepository"]
