from __future__ import annotations

import logging

REQUEST_TIMEOUT = 60
CHUNK_SIZE = 1048576

DEFAULT_MIRROR = "registry.hub.docker.com"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

# password lookup when a username is given without one
PASSWORD_ENV = "REGISTRY_PASSWORD"

# progress display tick, in seconds
PROGRESS_INTERVAL = 0.1

logger = logging.getLogger("image-save")
