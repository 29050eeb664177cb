from fastapi import Request

from app.core.container import Services


def get_services(request: Request) -> Services:
    """The service container built at startup (or injected by tests)."""
    return request.app.state.services
