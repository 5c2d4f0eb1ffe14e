from .base_client import BaseHTTPClient

__all__ = ["BaseHTTPClient"]
