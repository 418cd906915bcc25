"""
Post Discovery Services

This package contains services for the discovery pipeline:
- source_fetcher: Fetch all active sources concurrently
- rss_fetcher: Parse RSS/Atom feeds
- scraper: Scrape blog listing pages without a feed
- content_fetcher: Extract full article text
- url_normalizer: Canonicalize URLs for deduplication
- oracle: Rank and summarize posts via Anthropic or OpenAI
- store: Persistence helpers
- discovery: Orchestrate the complete discovery workflow
- manual_posts: Add a single post from a URL
"""
