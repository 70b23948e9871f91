"""
M-Stack Evaluate
=================

Components:
    - evaluator.py:     Concurrent judge / PRM / citation scoring of the best candidate
    - normalization.py: Clipping, temperature / isotonic score calibration, ECE
"""
