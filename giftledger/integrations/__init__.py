"""Outbound HTTP integrations: webhook sender and email provider."""
