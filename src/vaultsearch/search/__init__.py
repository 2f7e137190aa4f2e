"""Query orchestration: similarity search plus graph-aware enrichment.

`SearchOrchestrator` runs the retrieval modes; `enrich` holds the per-hit and
per-response annotators it schedules.
"""
