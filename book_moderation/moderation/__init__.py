"""
Moderation engine.

Core components:
- units.py:       Unit assembler and image batch allocator
- normalizer.py:  Raw provider payload -> canonical CategoryScores
- aggregator.py:  Per-category max over a chapter's images
- decision.py:    Threshold decisions per age rating
- records.py:     Verdict record (de)serialization and merging
- pipeline.py:    One moderation run from content to registry
"""
