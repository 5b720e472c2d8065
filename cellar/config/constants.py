"""
Centralized constants for cellar.
"""

import os
from pathlib import Path

# --- Filesystem ---
DEFAULT_ROOT = Path(os.getenv("CELLAR_HOME", Path.home() / ".cellar"))
WRAPPER_MODE = 0o755
STAGING_PREFIX = "cellar-"

# --- Downloads ---
DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1MB
HASH_BLOCK_SIZE = 64 * 1024
DEFAULT_DOWNLOAD_TIMEOUT = 30      # seconds
DEFAULT_FETCH_WORKERS = 4
INCOMPLETE_SUFFIX = ".incomplete"
GITHUB_TOKEN_KEY = "CELLAR_GITHUB_API_TOKEN"

# --- Manifests ---
SHA256_HEX_LENGTH = 64
FORMULA_SUFFIXES = (".yaml", ".yml")
