"""
API module boundary for the Hativon backend.

Design intent:
- Expose the auto-save and draft routes as a FastAPI app.
- Keep persistence and concurrency rules in ``hativon.drafts``.
"""
