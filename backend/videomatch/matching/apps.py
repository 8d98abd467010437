# videomatch/matching/apps.py
from pathlib import Path

from django.apps import AppConfig


class MatchingConfig(AppConfig):
    name = "videomatch.matching"
    label = "matching"
    # namespace package: tell Django where the app lives
    path = str(Path(__file__).resolve().parent)
