"""
M-Stack Learn
==============

Components:
    - calibrator.py: Dual ascent on (λ, μ), conformal τ, checkpoints, queue worker
"""
