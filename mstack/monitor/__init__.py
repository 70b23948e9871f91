"""
M-Stack Monitor
================

Components:
    - dynamic_k.py: Pre-generation risk estimate → K ∈ {1, 3, 5}
    - signals.py:   Agreement, entropy slope, contradiction mass, retrieval coverage
"""
