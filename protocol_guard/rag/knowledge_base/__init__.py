"""Bundled reference data: protocol corpus, formulary and provider impressions."""
