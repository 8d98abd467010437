# videomatch/matching/urls.py
from django.urls import path

from .views import (
    CancelView,
    ClearLocksView,
    ConsistencyView,
    DisconnectView,
    EndView,
    EnqueueView,
    HealthView,
    LeftBehindView,
    ProviderWebhookView,
    ResetView,
    SkipView,
    StatusView,
    TokenView,
)

urlpatterns = [
    path("enqueue", EnqueueView.as_view()),
    path("enqueue/", EnqueueView.as_view()),
    path("cancel", CancelView.as_view()),
    path("cancel/", CancelView.as_view()),
    path("skip", SkipView.as_view()),
    path("skip/", SkipView.as_view()),
    path("end", EndView.as_view()),
    path("end/", EndView.as_view()),
    path("disconnect", DisconnectView.as_view()),
    path("disconnect/", DisconnectView.as_view()),
    path("status", StatusView.as_view()),
    path("status/", StatusView.as_view()),
    path("token", TokenView.as_view()),
    path("token/", TokenView.as_view()),
    path("left-behind", LeftBehindView.as_view()),
    path("left-behind/", LeftBehindView.as_view()),
    path("webhook", ProviderWebhookView.as_view()),
    path("webhook/", ProviderWebhookView.as_view()),
    path("health", HealthView.as_view()),
    path("health/", HealthView.as_view()),
    path("health/consistency", ConsistencyView.as_view()),
    path("health/consistency/", ConsistencyView.as_view()),
    path("health/clear-locks", ClearLocksView.as_view()),
    path("health/clear-locks/", ClearLocksView.as_view()),
    path("health/reset", ResetView.as_view()),
    path("health/reset/", ResetView.as_view()),
]
