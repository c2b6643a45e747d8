"""
Rate limiter shared by the routers.
Keys on the real client IP so clients behind the proxy are limited individually.
"""
from slowapi import Limiter

from .security import get_client_ip

limiter = Limiter(
    key_func=get_client_ip,
    storage_uri="memory://",  # one process; point at Redis when scaling out
    strategy="fixed-window",
)
