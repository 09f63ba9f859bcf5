# ==============================================================================
# Serving Module
# ==============================================================================
#
# Land-cover model serving with FastAPI (standalone) or Ray Serve.
#
# Components:
#   - storage.py: fsspec/s3fs object store access
#   - artifacts.py: artifact resolution, metadata sidecar, local cache
#   - lifecycle.py: model load state machine and readiness gate
#   - preprocessing.py: upload validation and the versioned image transform
#   - decision.py: forward pass and confidence-threshold policy
#   - orchestrator.py: per-request composition and error mapping
#   - api.py / serve.py: FastAPI app factory and Ray Serve deployment
#   - schemas.py: Pydantic response models
#   - config.py: Serving configuration
#
# Entry Point:
#   serve run landcover.serving.serve:app_builder model_version="v3"
#
# ==============================================================================
"""Serving module for the land-cover classifier."""
