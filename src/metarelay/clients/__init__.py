"""
Client module for the metarelay facilitator.

Provides an httpx client that signs meta-transaction authorizations locally
and submits them for relayed execution.
"""

from .http_client import FacilitatorClient, FacilitatorClientError

__all__ = ["FacilitatorClient", "FacilitatorClientError"]
