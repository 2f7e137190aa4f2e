"""Knowledge-graph utilities.

Entities and relationships are extracted per chunk and merged into an
in-memory index keyed by chunk id, so a chunk's contribution can be replaced
or evicted on its own. Extraction is rule-based by default so it works
offline and fast on small machines; any model satisfying `EntityModel` can
be plugged in.
"""
