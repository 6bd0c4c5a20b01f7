"""
Wellness backend package.

Todo lists with due/reminder notifications and a daily data-retention
sweep, served over FastAPI. Exposes the FastAPI app instance for
convenience imports (src.wellness.app).
"""

from .main import app  # noqa: F401
