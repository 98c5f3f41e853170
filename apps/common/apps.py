"""
Common app configuration for SubShare Platform.
"""

from django.apps import AppConfig


class CommonConfig(AppConfig):
    """Shared types, logging helpers and validators."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.common"
    verbose_name = "Common"
