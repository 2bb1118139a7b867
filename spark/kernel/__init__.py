"""Kernel utilities shared across the pipeline.

Rules:
- Kernel code must not import from presentation layers (e.g. FastAPI routes).
- Kernel utilities stay small and stable; no provider logic here.
"""
