"""
api/limiter.py -- The one slowapi Limiter shared by the app and its routers.

api/main.py mounts it as middleware; api/routes/v1/threat_intel.py applies
per-route limits with @limiter.limit(). Counters live in process memory, so
limits are per worker.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
