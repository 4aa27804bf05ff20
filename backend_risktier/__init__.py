"""
Backend RiskTier — behavioral risk scoring and on-chain tier commitment for Stellar addresses.

Pulls an address's recent payment history from Horizon, reduces it to a
small feature vector, scores it with a fixed logistic model, and commits
the score and access tier to a Soroban contract. A per-address rate limiter
allows one commit per 24 hours; unreachable infrastructure degrades to a
local, non-authoritative fallback record.
"""

__version__ = "0.1.0"
