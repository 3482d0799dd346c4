from __future__ import annotations

import logging

LOGGER = logging.getLogger("glmcp.gitlab_api")
APP_VERSION = "0.1.0"
AUTH_MODE = "gitlab-oauth"

DEFAULT_GITLAB_API_URL = "https://gitlab.com"
