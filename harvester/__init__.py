"""Adaptive scheduling and incremental ingestion of scraped profile data."""
