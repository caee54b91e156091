"""
Sealbid - Confidential uniform-price auction engine

A research prototype integrating:
- Encrypted (oblivious) bid ranking and allocation
- Resumable, budget-metered computation steps
- Oracle-assisted direct and blind claims
"""

__version__ = "0.1.0"
