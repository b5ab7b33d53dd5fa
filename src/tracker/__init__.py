"""Exchange account tracker: role-gated accounts API with live notifications."""

from .api import app
from .worker import celery_app

__all__ = ["app", "celery_app"]
