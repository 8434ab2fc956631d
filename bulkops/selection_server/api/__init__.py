"""
API module for the selection server.

This module provides the external HTTP interface. All request handling
delegates to SelectionService.

Invariants:
    - Tokens are created only when a client asks, never per row click
    - Error responses carry a stable error_code

How to change safely:
    - Add new endpoints, don't change existing ones
    - Keep response fields additive
"""

from .http_server import create_http_app

__all__ = [
    "create_http_app",
]
