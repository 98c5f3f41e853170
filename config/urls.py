"""
URL configuration for SubShare Platform.

The HTTP surface lives in the storefront API gateway; this project exposes the
purchase, ledger and renewal services as Python APIs and Django-Q2 tasks only.
"""

from django.urls import URLPattern, URLResolver

urlpatterns: list[URLPattern | URLResolver] = []
