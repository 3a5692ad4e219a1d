"""Shared schema keys to avoid magic strings across sharelink modules."""

from __future__ import annotations

# Extraction result keys
K_DOWNLOAD = "download"
K_FILENAME = "filename"

# Downloaded binary keys
K_URL = "url"
K_BODY_SIZE = "size"
K_SHA256 = "sha256"
K_PATH = "path"

# Error payload keys (CLI --json)
K_ERROR = "error"
K_ERROR_TYPE = "type"
