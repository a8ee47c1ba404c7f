"""
Pod compliance scanner.

Finds pods that run a managed runtime without the required observability
agent and scales their Deployments to zero.
"""

__version__ = "0.1.0"
