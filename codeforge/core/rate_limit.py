"""Rate limiting configuration using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from codeforge.core.config import settings

# Rate limiter instance keyed on the client address
limiter = Limiter(key_func=get_remote_address)

# Limit applied to every generation endpoint
codegen_limit = settings.codegen_rate_limit
