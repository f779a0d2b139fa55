"""
Batch intake pipeline for user-submitted financial documents.

Modules
-------
config        – Pipeline-specific settings (concurrency, quotas, size limits …)
schemas       – Pydantic models for items, outcomes, decisions and reports
errors        – Exception hierarchy for extraction and configuration failures
rate_limiter  – Sliding-window admission control per (subject, action)
security      – Text / metadata scanning for XSS and injection patterns
validation    – File type, size, signature and filename checks + malware heuristics
confidence    – Business-rule checks and amount-scaled acceptance thresholds
duplicates    – File fingerprints and extracted-content similarity
costs         – Token cost table, cost estimates and pre-extraction skip rules
scheduler     – Windowed, concurrency-bounded batch runner with retry/backoff
pipeline      – Convenience entry points wiring everything together
"""
