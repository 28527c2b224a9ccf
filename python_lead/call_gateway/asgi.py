"""
ASGI config for call_gateway project.
"""
import os
from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'call_gateway.settings')
application = get_asgi_application()
