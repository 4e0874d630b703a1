"""
Transactions → Receipts matching engine

Pairs card/bank transactions with uploaded expense receipts using weighted
multi-criteria scoring, auto-confirms high-confidence pairs, queues the rest
for human review, and learns from reviewer feedback.
"""

__version__ = "0.1.0"
