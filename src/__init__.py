"""
RankWatch

Search ranking monitor that:
1. Collects Google positions for tracked keywords in rate-limited batches
2. Scores ranking history into a report card
3. Generates cached AI insights over the report card
"""

__version__ = "0.1.0"
