# =============================================================================
# PW Client -- Package Logger
# =============================================================================

from __future__ import annotations

import logging

logger = logging.getLogger("pw_client")
logger.addHandler(logging.NullHandler())
