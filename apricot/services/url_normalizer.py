"""
URL Normalization Service

Canonicalizes post URLs so the same post reached through different feeds or
tracking links is stored once, and derives the post fingerprint from the
canonical form.
"""

import hashlib
import logging
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from apricot.services.candidates import CandidatePost

logger = logging.getLogger(__name__)

# Query parameters to always remove (tracking)
REMOVE_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
    'fbclid', 'gclid', 'ref', 'source', 'mc_cid', 'mc_eid',
    '_ga', '_gl', 'ncid', 'ocid', 'sr_share',
}


def normalize_url(url: str) -> str:
    """
    Canonicalize a post URL.

    Normalization rules:
    1. Lowercase scheme and host (paths are case sensitive on many blogs)
    2. Remove trailing slashes from path
    3. Remove tracking query parameters
    4. Remove fragments (#...)

    Args:
        url: Original URL

    Returns:
        Canonical URL string ('' for an empty input)
    """
    if not url:
        return ''

    try:
        parsed = urlparse(url.strip())

        path = parsed.path.rstrip('/')

        if parsed.query:
            params = parse_qs(parsed.query, keep_blank_values=False)
            kept = {key: values for key, values in params.items() if key.lower() not in REMOVE_PARAMS}
            query = urlencode(kept, doseq=True) if kept else ''
        else:
            query = ''

        return urlunparse((
            parsed.scheme.lower(),
            parsed.netloc.lower(),
            path,
            parsed.params,
            query,
            ''          # No fragment
        ))

    except Exception as e:
        logger.warning(f"URL normalization failed for '{url}': {e}")
        return url.strip()  # Return original on error


def compute_fingerprint(url: str) -> str:
    """Return the SHA-256 hex digest of a canonical URL."""
    return hashlib.sha256(url.encode('utf-8')).hexdigest()


def deduplicate_candidates(candidates: list[CandidatePost]) -> tuple[list[CandidatePost], int]:
    """
    Deduplicate candidates by canonical URL, keeping the first occurrence.

    Args:
        candidates: Candidate posts whose url is already canonical

    Returns:
        Tuple of (deduplicated candidates, duplicate count)
    """
    seen_urls = set()
    unique = []
    duplicates = 0

    for candidate in candidates:
        if candidate.url in seen_urls:
            duplicates += 1
            logger.debug(f"Duplicate URL skipped: {candidate.url}")
            continue
        seen_urls.add(candidate.url)
        unique.append(candidate)

    logger.info(f"Deduplication: {len(candidates)} -> {len(unique)} ({duplicates} duplicates removed)")
    return unique, duplicates
