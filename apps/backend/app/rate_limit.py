"""
IP-based rate limiting for submission endpoints.
"""
import os
from slowapi import Limiter
from slowapi.util import get_remote_address

# Submissions trigger outbound fetches and model calls: 30/minute in dev, 20 in production
RATE_LIMIT_SUBMIT = os.getenv("RATE_LIMIT_SUBMIT", "30/minute" if os.getenv("APEXSCRAPE_ENV") == "dev" else "20/minute")
RATE_LIMIT_READ = os.getenv("RATE_LIMIT_READ", "240/minute")

limiter = Limiter(key_func=get_remote_address)
