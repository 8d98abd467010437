# videomatch/config/urls.py
from django.urls import path, include


urlpatterns = [
    path("api/match/", include("videomatch.matching.urls")),
]
