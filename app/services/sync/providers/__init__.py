"""
Data Source Providers
Slack Web API client and record normalization
"""
from app.services.sync.providers.slack import (
    normalize_slack_container,
    normalize_slack_member,
    normalize_slack_message,
)
from app.services.sync.providers.slack_client import Page, ProviderCredentials, SlackClient

__all__ = [
    "normalize_slack_container",
    "normalize_slack_member",
    "normalize_slack_message",
    "Page",
    "ProviderCredentials",
    "SlackClient",
]
