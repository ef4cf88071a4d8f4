"""FastAPI dependency injection providers."""

from typing import Annotated

from fastapi import Depends, Request

from matching.dispatch_coordinator import DispatchCoordinator


def get_coordinator(request: Request) -> DispatchCoordinator:
    """Retrieve DispatchCoordinator from app state."""
    return request.app.state.coordinator


CoordinatorDep = Annotated[DispatchCoordinator, Depends(get_coordinator)]
