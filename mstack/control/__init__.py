"""
M-Stack Control
================

Components:
    - controller.py: Deterministic CMDP decision policy with the conformal coverage gate
"""
