# Wrangler Catalog Package
# ========================
# Configuration, logging setup and the top-level Wrangler handle.

from catalog.config import WranglerConfig, configure_logging
from catalog.wrangler import Wrangler
