__version__ = "1.0.0"
__title__ = "ASPIRE Lab"
__description__ = "Clinical intake and ASD risk prediction service"
__license__ = "MIT"

# Package-level imports for convenience
from aspire.core.config import get_settings

__all__ = [
    "__version__",
    "__title__",
    "__description__",
    "__license__",
    "get_settings",
]
