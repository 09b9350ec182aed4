
"""
Hativon newsletter backend package.

Design intent:
- Host the draft auto-save service and its client-side save scheduler.
- Keep the version-checked persistence path independent from UI concerns.
"""
