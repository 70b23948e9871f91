"""
M-Stack Claim Graph
====================

Components:
    - extractor.py: Pattern-based claim segmentation (pluggable)
    - graph.py:     Pairwise entailment graph + greedy maximum consistent subgraph
"""
