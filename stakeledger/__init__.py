"""
Stakeledger - stake settlement and reconciliation engine for poker sessions.

Players sell a share of a session's result to one or more stakers; this
package persists the agreements, carries them through the invite workflow,
and computes the transfer owed once the session resolves.
"""

__version__ = "1.0.0"
