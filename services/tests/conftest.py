"""
Top-level test configuration for tfregistry.
"""

import os

# Ensure test-friendly defaults
os.environ.setdefault("TFREGISTRY_STORAGE__BACKEND", "filesystem")
os.environ.setdefault("TFREGISTRY_JSON_LOGS", "false")
os.environ.setdefault("TFREGISTRY_LOG_LEVEL", "DEBUG")
os.environ.setdefault("TFREGISTRY_ADMIN_TOKEN", "test-admin-token")
