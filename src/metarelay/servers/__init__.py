from .apps import FacilitatorServer, build_gateway, create_app, error_response

__all__ = [
    "FacilitatorServer",
    "build_gateway",
    "create_app",
    "error_response",
]
