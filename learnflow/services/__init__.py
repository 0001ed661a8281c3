"""
Services package: session-scoped state and background work.

Included modules:
- context_window: bounded interaction log, reference resolution, compaction
- gap_pipeline: gap deduplication, categorization, severity, recommendations
- progress_sync: fire-and-forget Progress Store forwarding with retries
- session_manager: session ownership, per-session serialization, teardown
- scheduler: APScheduler jobs (progress retry, idle session sweep)
"""
