"""
ridesync - provider token lifecycle, backfill orchestration and
webhook-driven ride ingestion.
"""

__version__ = "0.1.0"
