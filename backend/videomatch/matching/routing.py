# videomatch/matching/routing.py
from channels.routing import ChannelNameRouter

from .consumers import EVENTS_CHANNEL, ProviderEventConsumer

channel_routes = ChannelNameRouter(
    {
        EVENTS_CHANNEL: ProviderEventConsumer.as_asgi(),
    }
)
