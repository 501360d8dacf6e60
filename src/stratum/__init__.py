"""
Stratum: Verifiable, hash-chained database change management.

Plans are tamper-evident ledgers of schema changes; the engine deploys,
reverts and verifies them against a registry kept in the target database.
"""

__version__ = "0.4.0"
