"""
API server package — HTTP/REST interface.

Exposes risk analyses, rate-limit status, commits, and fallback records to
clients. Delegates to RiskTierService for all work.
"""
