"""
activity — Monitored check-in sessions and their deadlines.

Sub-modules:
    models         — Activity, CheckIn, UserProfile, DeferredCheckTask
    store          — storage contract + in-memory implementation
    orm            — SQLAlchemy tables + SQL implementations
    state_machine  — start / heartbeat / end / deadline-check transitions
    scheduler      — delayed deadline checks (APScheduler)
"""
