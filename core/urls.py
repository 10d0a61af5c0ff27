"""
URL configuration for core project.

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import path
from django.urls import include
from django.http import JsonResponse


def home_view(request):
    return JsonResponse({
        "message": "Marketing delivery backend",
        "status": "running",
        "endpoints": {
            "admin": "/admin/",
            "webhooks": "/api/v1/marketing/webhooks/sendgrid/",
            "unsubscribe": "/api/v1/marketing/unsubscribe/<token>/",
            "preferences": "/api/v1/marketing/preferences/<token>/",
        }
    })


urlpatterns = [
    path("", home_view, name="home"),
    path("admin/", admin.site.urls),
    path("api/v1/marketing/", include("apps.suppressions.urls")),
]
