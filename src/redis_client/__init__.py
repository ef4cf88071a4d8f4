from .publisher import RideEventPublisher

__all__ = ["RideEventPublisher"]
