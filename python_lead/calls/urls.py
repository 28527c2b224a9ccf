"""
URL configuration for calls app.
"""
from django.urls import path
from calls.views import CallWebhookView

urlpatterns = [
    path('calls/', CallWebhookView.as_view(), name='call-webhook'),
]
