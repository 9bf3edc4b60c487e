# Identity API Utilities
"""
Shared utility functions for identity services.
"""

from api.utils.db_paths import get_identity_db_path

__all__ = ["get_identity_db_path"]
