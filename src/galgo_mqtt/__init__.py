"""
Galgo MQTT Core: broker connection and topic-subscription lifecycle manager.

Keeps one broker connection alive, re-asserts the stored active subscriptions
after every (re)connect, persists every inbound message to SQLite, and
announces its own online/offline status on a retained topic.
"""
