"""Scheduled triggers, retry policy and the Celery app."""
