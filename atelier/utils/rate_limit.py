"""
Shared slowapi limiter; main.py registers it on the app
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from atelier.config import get_settings

READ_LIMIT = "120/minute"
WRITE_LIMIT = "60/minute"

limiter = Limiter(key_func=get_remote_address, enabled=get_settings().rate_limit_enabled)
