"""
FastAPI dependencies shared by the routers.
"""
from fastapi import Request

from ..services.service_factory import ReconcilerServices


def get_services(request: Request) -> ReconcilerServices:
    """Service graph built in the application lifespan."""
    return request.app.state.services
