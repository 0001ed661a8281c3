"""
HTTP API routers.

- query: POST /query
- sessions: mode, context window, gaps and teardown of a session
- progress: the learner's durable gap history
"""
