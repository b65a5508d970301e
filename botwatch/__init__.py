"""
Botwatch - A single-worker process supervisor with a health dashboard.

Keeps one long-running worker process alive, pulls updated code on a
schedule, samples host resources, and sends throttled status notifications
to Telegram chats and webhooks.
"""

__version__ = "0.1.0"
