"""
Rate Limiting
slowapi limiter for the ops API (manual triggers are the expensive call)
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["120/minute"],
    storage_uri="memory://",
)
