"""
M-Stack Audit
==============

Components:
    - logger.py: Hash-chained append-only audit log, JSONL / in-memory sinks, chain verification
"""
