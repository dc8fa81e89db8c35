"""
Backend package for the dispatch relay service.

This package provides a FastAPI application that lists dispatch articles
(optionally balanced across categories), receives webhook payloads from the
automation tool, persists them, and relays notifications by email and
downstream webhooks through a queue-backed worker.
"""
