# ==============================================================================
# Utilities Module
# ==============================================================================
#
# Shared utilities for the serving package.
#
# Components:
#   - logging.py: Rich-based logging configuration
#
# Usage:
#   from landcover._utils.logging import get_logger, log_section
#
# ==============================================================================
"""Shared utilities for the land-cover classifier service."""
