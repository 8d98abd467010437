# videomatch/config/routing.py
from channels.routing import ProtocolTypeRouter

import videomatch.matching.routing


def build_application(http_app):
    return ProtocolTypeRouter(
        {
            "http": http_app,
            # background workers: manage.py runworker matching-events
            "channel": videomatch.matching.routing.channel_routes,
        }
    )
