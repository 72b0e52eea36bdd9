from __future__ import annotations

import logging

LOGGER = logging.getLogger("adminapi")
APP_VERSION = "0.1.0"

LOGIN_PATH = "/adminMember/login"
LOGOUT_PATH = "/adminMember/logout"
TOKEN_REFRESH_PATH = "/adminMember/tokenrefresh"

UPLOAD_CREATE_PATH = "/video/cloudflare/tus/create"
UPLOAD_COMPLETE_PATH = "/video/cloudflare/tus/complete"
STREAM_INFO_PATH = "/video/stream/{stream_id}/info"

ACCESS_TOKEN_TTL_SECONDS = 24 * 60 * 60
REFRESH_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60
MAX_REFRESH_RETRIES = 3

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
MAX_UPLOAD_BYTES = 2 * 1024 * 1024 * 1024
DEFAULT_CONTENT_TYPES = frozenset({"video/mp4"})
CHUNK_RETRY_DELAYS = (0, 3, 5, 10, 20)

TUS_VERSION = "1.0.0"

# Marks a request that already went through one refresh-and-replay cycle.
RETRIED_EXTENSION = "adminapi_retried"
