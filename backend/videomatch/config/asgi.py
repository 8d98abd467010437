import os
from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "videomatch.config.settings")

django_asgi_app = get_asgi_application()

from videomatch.config.routing import build_application

application = build_application(django_asgi_app)
