"""
alerts — Alarm content and multi-channel delivery.

Sub-modules:
    channels/     — SMS and email delivery backends
    templates     — zh/en alert text and map links
    credentials   — sender account and legacy settings repositories
    sender_pool   — round-robin SMTP failover across sender accounts
    dispatcher    — fan-out of one alarm to every contact channel
    models        — data structures shared across the package
"""
