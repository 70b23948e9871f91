"""
M-Stack Evaluation Harness
===========================

Offline benchmark kit that reproduces results.json for the project site.

Modules:
    synthetic.py - Seeded synthetic domains and the scripted generator
    baselines.py - Base, SelfConsistency, JudgeGate and the M-Stack system
    metrics.py   - Hallucination rate, ECE, risk-coverage curve, AURC, latency
    benchmark.py - Runs every system and assembles results.json
"""
