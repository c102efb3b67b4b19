from aspire.api.routes import cases, health, jobs
from aspire.api.dependencies import (
    get_case_service,
    get_correlation_id,
    get_current_user_optional,
    require_admin,
)

# API route modules
__all__ = [
    "cases",
    "health",
    "jobs",
    "get_case_service",
    "get_correlation_id",
    "get_current_user_optional",
    "require_admin",
]
